from __future__ import annotations

import os

import cbor2


def encode(obj) -> bytes:
    return cbor2.dumps(obj)


def decode(b: bytes):
    return cbor2.loads(b)


def dump_file(obj, path: str) -> None:
    """Write `obj` as CBOR to `path`, replacing any previous file atomically."""
    tmp = f"{path}.tmp"
    with open(tmp, "wb") as f:
        cbor2.dump(obj, f)
        f.flush()
        os.fsync(f.fileno())
    os.replace(tmp, path)


def load_file(path: str):
    with open(path, "rb") as f:
        return cbor2.load(f)

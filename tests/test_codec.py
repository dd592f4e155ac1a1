import os

from roomhub.codec import decode, dump_file, encode, load_file
from roomhub.constants import MessageType
from roomhub.envelope import make_envelope, validate_envelope


def test_codec_round_trip() -> None:
    env = make_envelope(MessageType.SEND_MESSAGE, body={"roomId": "general", "text": "hello"})
    data = encode(env)
    decoded = decode(data)
    assert decoded == env
    validate_envelope(decoded)


def test_dump_file_replaces_atomically(tmp_path) -> None:
    path = str(tmp_path / "doc.cbor")
    dump_file({"version": 1}, path)
    dump_file({"version": 2}, path)

    assert load_file(path) == {"version": 2}
    assert not os.path.exists(path + ".tmp")

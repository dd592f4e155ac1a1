from __future__ import annotations

import argparse
import os
import sys
from dataclasses import replace
from pathlib import Path

import RNS

from .config import HubRuntimeConfig, apply_config_data, load_toml
from .logging_config import configure_logging
from .paths import (
    default_config_path,
    default_history_path,
    default_identity_path,
    default_rooms_path,
    ensure_private_dir,
)
from .service import HubService

_CONFIG_TEMPLATE = """\
# roomhub hub configuration.
#
# Generated on first start. Review the values below, then run roomhub again.

[hub]

# Reticulum config directory. Empty means Reticulum's own default.
configdir = ""

# Reticulum Identity file the hub destination is derived from.
identity_path = {identity_path!r}

# Destination the hub listens on, as "app.aspect[.aspect...]".
dest_name = "roomhub.hub"

# Announce once at startup, and again every announce_period_s seconds
# when that is greater than zero.
announce_on_start = true
announce_period_s = 0.0

hub_name = "roomhub"

# Joining an unknown room creates it as a public room.
auto_create_rooms = false
# Joining a room first leaves every other room.
single_room_membership = false

# A room log longer than history_hard_cap is cut back to the newest
# history_soft_cap messages. Joiners get the newest join_history_limit.
history_hard_cap = 1000
history_soft_cap = 500
join_history_limit = 100

# Idle seconds before a typing indicator clears itself.
typing_idle_s = 1.0

# Length limits, counted in Unicode characters.
display_name_max_chars = 32
max_room_id_len = 64
max_room_name_len = 64

# Upper bound for one payload, inline or as an RNS.Resource (bytes).
max_resource_bytes = {max_resource_bytes}

[storage]

# Room metadata (TOML) and message history (CBOR), rewritten atomically
# every interval_s seconds and at shutdown. interval_s = 0 keeps only the
# shutdown write.
rooms_path = {rooms_path!r}
history_path = {history_path!r}
interval_s = 30.0
history_limit = 100

# Public rooms present on every start.
default_rooms = ["general", "random", "tech"]

[logging]

level = "INFO"
# Level applied to the "RNS" logger.
rns_level = "WARNING"
console = true
# Empty disables the log file.
file = ""
format = "%(asctime)s %(levelname)s %(name)s[%(threadName)s]: %(message)s"
datefmt = ""
"""


def _write_default_config(
    config_path: str, identity_path: str, rooms_path: str, history_path: str
) -> None:
    parent = Path(config_path).parent
    if str(parent):
        ensure_private_dir(parent)
    text = _CONFIG_TEMPLATE.format(
        identity_path=identity_path,
        rooms_path=rooms_path,
        history_path=history_path,
        max_resource_bytes=HubRuntimeConfig.max_resource_bytes,
    )
    Path(config_path).write_text(text, encoding="utf-8")


def _create_identity(identity_path: str) -> None:
    parent = Path(identity_path).parent
    if str(parent):
        ensure_private_dir(parent)
    RNS.Identity().to_file(identity_path)
    try:
        os.chmod(identity_path, 0o600)
    except OSError:
        pass


def _ensure_first_run_files(
    config_path: str, identity_path: str, rooms_path: str, history_path: str
) -> bool:
    """Create whichever of the config and identity files is missing.

    Returns True if anything was written.
    """
    missing_config = not os.path.exists(config_path)
    missing_identity = not os.path.exists(identity_path)
    if missing_config:
        _write_default_config(config_path, identity_path, rooms_path, history_path)
    if missing_identity:
        _create_identity(identity_path)
    return missing_config or missing_identity


def _build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="roomhub", description="Run a roomhub chat hub")

    p.add_argument(
        "--config",
        default=str(default_config_path()),
        help="TOML config file; a commented default is written if missing",
    )
    p.add_argument("--configdir", default=None, help="Reticulum config directory")
    p.add_argument(
        "--identity",
        default=str(default_identity_path()),
        help="Hub identity file; generated if missing",
    )
    p.add_argument(
        "--rooms-file",
        default=None,
        help=f"Room metadata TOML (default: {default_rooms_path()})",
    )
    p.add_argument(
        "--history-file",
        default=None,
        help=f"Message history CBOR (default: {default_history_path()})",
    )
    p.add_argument(
        "--dest-name", default=None, help="Destination app name (default: roomhub.hub)"
    )
    p.add_argument(
        "--no-announce",
        action="store_true",
        help="Skip the startup announce (periodic announces still run)",
    )
    p.add_argument(
        "--persist-interval",
        type=float,
        default=None,
        help="Seconds between snapshots (0 disables periodic snapshots)",
    )
    p.add_argument(
        "--auto-create-rooms",
        action="store_true",
        help="Create unknown rooms on join instead of rejecting",
    )
    p.add_argument(
        "--single-room",
        action="store_true",
        help="Leave other rooms when joining one",
    )
    p.add_argument(
        "--log-level",
        default=None,
        help="Override [logging].level (DEBUG, INFO, WARNING, ERROR)",
    )
    p.add_argument(
        "--log-file",
        default=None,
        help="Override [logging].file; an empty value turns file logging off",
    )
    return p


def build_config(args: argparse.Namespace) -> HubRuntimeConfig:
    """Defaults, then the config file, then command line overrides."""
    config_path = str(args.config)
    cfg = HubRuntimeConfig(
        config_path=config_path,
        identity_path=str(args.identity),
        rooms_path=str(default_rooms_path()),
        history_path=str(default_history_path()),
    )

    if config_path and os.path.exists(config_path):
        cfg = apply_config_data(cfg, load_toml(config_path))

    if args.configdir is not None:
        cfg = replace(cfg, configdir=args.configdir)
    if args.rooms_file is not None:
        cfg = replace(cfg, rooms_path=str(args.rooms_file))
    if args.history_file is not None:
        cfg = replace(cfg, history_path=str(args.history_file))
    if args.dest_name is not None:
        cfg = replace(cfg, dest_name=args.dest_name)
    if args.no_announce:
        cfg = replace(cfg, announce_on_start=False)
    if args.persist_interval is not None:
        cfg = replace(cfg, persist_interval_s=float(args.persist_interval))
    if args.auto_create_rooms:
        cfg = replace(cfg, auto_create_rooms=True)
    if args.single_room:
        cfg = replace(cfg, single_room_membership=True)

    if args.log_level is not None:
        cfg = replace(cfg, log_level=str(args.log_level))
    if args.log_file is not None:
        cfg = replace(cfg, log_file=str(args.log_file) if str(args.log_file) else None)

    return cfg


def main(argv: list[str] | None = None) -> None:
    args = _build_arg_parser().parse_args(sys.argv[1:] if argv is None else argv)

    config_path = str(args.config)
    identity_path = str(args.identity)
    rooms_path = str(args.rooms_file or default_rooms_path())
    history_path = str(args.history_file or default_history_path())

    if _ensure_first_run_files(config_path, identity_path, rooms_path, history_path):
        print(
            "Created default roomhub files. Edit the configuration before starting:\n"
            f"- Config:   {config_path}\n"
            f"- Identity: {identity_path}\n"
            "\nThen re-run roomhub.",
            file=sys.stderr,
        )
        raise SystemExit(0)

    cfg = build_config(args)
    configure_logging(cfg, override_level=args.log_level, override_file=args.log_file)

    svc = HubService(cfg)
    svc.start()
    svc.run_forever()


if __name__ == "__main__":
    main()

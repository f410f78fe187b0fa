"""Command-line entry point.

Usage: nodeboot [--spawn] [--check-kv] ... ["-F abi-7-23" | --release ...]

Everything that is not one of our own options is passed to `cargo build`
as-is, whether quoted as one argument or given as separate words.
"""

from __future__ import annotations

import argparse
import dataclasses
import logging
import os
import sys
from typing import List, Optional

from nodeboot.config import load_runtime_config
from nodeboot.errors import BootstrapError
from nodeboot.pipeline import run_pipeline

log = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [nodeboot] %(levelname)s: %(message)s"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="nodeboot",
        usage="%(prog)s [options] [BUILD_FLAGS ...]",
        description="Build DatenLord and start a local storage node with a fresh mount directory.",
        epilog='Anything not listed above goes to `cargo build` unchanged, e.g. "-F abi-7-23" or --release.',
        allow_abbrev=False,
    )
    parser.add_argument("--config", default=None, help="path to a JSON config file")
    parser.add_argument("--no-reconcile", action="store_true",
                        help="do not unmount or remove a stale mount directory")
    parser.add_argument("--spawn", action="store_true",
                        help="start the node as a detached child instead of replacing this process")
    parser.add_argument("--check-kv", action="store_true",
                        help="wait for the etcd endpoint to report healthy first")
    parser.add_argument("--build-timeout", type=float, default=None, metavar="SEC",
                        help="abort the build after SEC seconds")
    parser.add_argument("--log-level", default=os.environ.get("NODEBOOT_LOG_LEVEL", "INFO"),
                        help="orchestrator log level (default: INFO)")
    return parser


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stderr,
    )


def main(argv: Optional[List[str]] = None) -> int:
    # unrecognised tokens, in order, are the build options
    args, build_args = build_parser().parse_known_args(argv)
    build_flags = " ".join(build_args)
    setup_logging(args.log_level)

    try:
        cfg = load_runtime_config(args.config)
    except BootstrapError as e:
        log.error(str(e))
        return e.exit_code

    overrides = {}
    if args.spawn:
        overrides["launch_mode"] = "spawn"
    if args.check_kv:
        overrides["check_kv"] = True
    if args.build_timeout is not None:
        overrides["build_timeout_sec"] = args.build_timeout if args.build_timeout > 0 else None
    if overrides:
        cfg = dataclasses.replace(cfg, **overrides)

    return run_pipeline(cfg, build_flags, reconcile_mounts=not args.no_reconcile)


if __name__ == "__main__":
    sys.exit(main())

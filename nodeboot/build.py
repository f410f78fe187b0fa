"""Build invoker: runs `cargo build` for the node binary."""

from __future__ import annotations

import logging
import shlex
import subprocess
from typing import List, Mapping, Optional

from nodeboot.config import RuntimeConfig
from nodeboot.errors import BuildError

log = logging.getLogger(__name__)


def build_command(cfg: RuntimeConfig, build_flags: str = "") -> List[str]:
    """``cargo build`` plus the caller's options, split like a shell would."""
    try:
        extra = shlex.split(build_flags or "")
    except ValueError as e:
        raise BuildError(f"Cannot parse build flags {build_flags!r}: {e}") from e
    return [cfg.cargo_cmd, "build"] + extra


def run_build(cfg: RuntimeConfig, build_flags: str = "",
              environ: Optional[Mapping[str, str]] = None) -> None:
    cmd = build_command(cfg, build_flags)
    log.info("==> Building datenlord")
    log.debug(f"Build command: {' '.join(cmd)} (cwd={cfg.repo_dir})")
    try:
        res = subprocess.run(
            cmd,
            cwd=cfg.repo_dir,
            env=cfg.child_env(environ),
            timeout=cfg.build_timeout_sec,
        )
    except FileNotFoundError as e:
        raise BuildError(f"Failed to build datenlord: {cmd[0]} not found") from e
    except subprocess.TimeoutExpired as e:
        raise BuildError(f"Failed to build datenlord: timed out after {cfg.build_timeout_sec}s") from e
    if res.returncode != 0:
        raise BuildError(f"Failed to build datenlord. ({cmd[0]} exited with status {res.returncode})")

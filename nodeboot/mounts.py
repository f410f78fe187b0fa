"""
Mount state reconciliation.

Brings the node's mount directory to a known-clean state before a build:
detect a live mount, unmount it, then remove whatever is left on disk.
Unmount failures are only logged; removal is the step that must succeed.
"""

from __future__ import annotations

import logging
import os
import pathlib
import re
import shutil
import subprocess
from dataclasses import dataclass
from typing import List, Optional, Sequence

from nodeboot.config import RuntimeConfig
from nodeboot.errors import ReconcileError

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class MountEntry:
    source: str
    target: str
    fstype: str = ""
    options: str = ""


@dataclass(frozen=True)
class ReconcileReport:
    was_mounted: bool
    unmounted: bool
    removed: bool


# ---------------------------------------------------------------------------
# Mount table
# ---------------------------------------------------------------------------

_OCTAL_ESCAPE = re.compile(r"\\([0-7]{3})")
# `mount` output: "<source> on <target> type <fstype> (<options>)"
_MOUNT_CMD_LINE = re.compile(r"^(?P<source>\S+) on (?P<target>.+?) type (?P<fstype>\S+)(?: \((?P<options>[^)]*)\))?$")


def _unescape(field: str) -> str:
    return _OCTAL_ESCAPE.sub(lambda m: chr(int(m.group(1), 8)), field)


def parse_mount_table(text: str) -> List[MountEntry]:
    """Parse either /proc/mounts lines or the output of `mount`."""
    entries: List[MountEntry] = []
    for line in text.splitlines():
        line = line.strip()
        if not line:
            continue
        m = _MOUNT_CMD_LINE.match(line)
        if m:
            entries.append(MountEntry(
                source=m.group("source"),
                target=m.group("target"),
                fstype=m.group("fstype"),
                options=m.group("options") or "",
            ))
            continue
        parts = line.split()
        if len(parts) < 2:
            log.debug(f"Skipping malformed mount table line: {line!r}")
            continue
        entries.append(MountEntry(
            source=_unescape(parts[0]),
            target=_unescape(parts[1]),
            fstype=parts[2] if len(parts) > 2 else "",
            options=parts[3] if len(parts) > 3 else "",
        ))
    return entries


def read_mount_table(mounts_file: str, timeout_sec: Optional[float] = None) -> List[MountEntry]:
    try:
        text = pathlib.Path(mounts_file).read_text(encoding="utf-8", errors="replace")
    except OSError as e:
        log.debug(f"Cannot read {mounts_file} ({e}), falling back to `mount`")
        try:
            res = subprocess.run(["mount"], capture_output=True, text=True, timeout=timeout_sec)
        except (OSError, subprocess.TimeoutExpired):
            log.warning("Cannot read the mount table; treating it as empty", exc_info=True)
            return []
        text = res.stdout or ""
    return parse_mount_table(text)


def _under(target: str, base: str) -> bool:
    base = base.rstrip("/") or "/"
    nested = base if base.endswith("/") else base + "/"
    return target == base or target.startswith(nested)


def find_mounts(mount_dir: str, entries: Sequence[MountEntry]) -> List[MountEntry]:
    """Entries mounted at ``mount_dir`` or anywhere beneath it.

    The kernel lists canonical paths, so the symlink-free spelling of
    ``mount_dir`` is matched too.
    """
    bases = {mount_dir, os.path.realpath(mount_dir)}
    return [e for e in entries if any(_under(e.target, b) for b in bases)]


# ---------------------------------------------------------------------------
# Unmount / remove
# ---------------------------------------------------------------------------

def unmount(path: str, cmd: Sequence[str] = ("fusermount", "-u"),
            timeout_sec: Optional[float] = None) -> bool:
    """Best-effort unmount. Never raises; returns whether it succeeded."""
    argv = list(cmd) + [path]
    try:
        res = subprocess.run(argv, capture_output=True, text=True, timeout=timeout_sec)
    except FileNotFoundError:
        log.warning(f"Unmount tool not found: {argv[0]}")
        return False
    except subprocess.TimeoutExpired:
        log.warning(f"Unmounting {path} timed out after {timeout_sec}s")
        return False
    except OSError as e:
        log.warning(f"Failed to run {argv[0]} for {path}: {e}")
        return False
    if res.returncode != 0:
        err = (res.stderr or "").strip()
        detail = err.splitlines()[0][:200] if err else f"exit status {res.returncode}"
        log.warning(f"Failed to unmount {path}: {detail}")
        return False
    return True


def remove_mount_dir(path: str) -> bool:
    """Remove ``path`` from disk. Returns False if there was nothing to remove."""
    try:
        st = os.lstat(path)
    except FileNotFoundError:
        return False
    except OSError as e:
        # e.g. ENOTCONN on a FUSE mount whose daemon is gone
        raise ReconcileError(f"Failed to remove directory {path}: {e}") from e

    try:
        if pathlib.Path(path).is_dir() and not os.path.islink(path):
            shutil.rmtree(path)
        else:
            os.unlink(path)
    except OSError as e:
        raise ReconcileError(f"Failed to remove directory {path}: {e}") from e
    log.debug(f"Removed {path} (mode {oct(st.st_mode)})")
    return True


def reconcile(cfg: RuntimeConfig) -> ReconcileReport:
    """Leave ``cfg.mount_dir`` unmounted and absent from the filesystem."""
    mount_dir = cfg.mount_dir
    mounted = find_mounts(mount_dir, read_mount_table(cfg.mounts_file, cfg.unmount_timeout_sec))

    unmounted = False
    if mounted:
        log.info(f"{mount_dir} is mounted. Unmounting now.")
        # deepest first so nested mounts do not pin their parent
        targets = sorted({e.target for e in mounted}, key=len, reverse=True)
        results = [unmount(t, cfg.unmount_cmd, cfg.unmount_timeout_sec) for t in targets]
        unmounted = all(results)
    else:
        log.info(f"{mount_dir} is not mounted.")

    removed = remove_mount_dir(mount_dir)
    if removed:
        log.info(f"{mount_dir} unmounted and removed.")
    return ReconcileReport(was_mounted=bool(mounted), unmounted=unmounted, removed=removed)

"""Single-pass bootstrap: probe, reconcile, build, create mount dir, launch."""

from __future__ import annotations

import logging
from typing import Mapping, Optional

from nodeboot.build import run_build
from nodeboot.config import RuntimeConfig
from nodeboot.errors import BootstrapError
from nodeboot.kv import wait_for_kv
from nodeboot.launcher import create_mount_dir, launch
from nodeboot.mounts import reconcile

log = logging.getLogger(__name__)


def run_pipeline(cfg: RuntimeConfig, build_flags: str = "", reconcile_mounts: bool = True,
                 environ: Optional[Mapping[str, str]] = None) -> int:
    """Run every stage in order and return the process exit status.

    Each stage raises ``BootstrapError`` on fatal failure; nothing that already
    happened is rolled back.
    """
    try:
        if cfg.check_kv:
            wait_for_kv(cfg.etcd_endpoint, wait_sec=cfg.kv_wait_sec)
        if reconcile_mounts:
            reconcile(cfg)
        else:
            log.info(f"Skipping mount reconciliation for {cfg.mount_dir}")

        log.info("==> Start to deploy datenlord locally")
        run_build(cfg, build_flags, environ=environ)
        create_mount_dir(cfg.mount_dir)
        launch(cfg, environ=environ)
    except BootstrapError as e:
        log.error(str(e))
        log.debug("Bootstrap aborted", exc_info=True)
        return e.exit_code
    return 0

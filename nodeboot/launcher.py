"""
Process launcher.

Creates the empty mount directory and hands control to the node binary.
In ``exec`` mode the orchestrator process is replaced by the node; in
``spawn`` mode the node is started as a detached child and the orchestrator
exits once the child has survived a short startup window.
"""

from __future__ import annotations

import logging
import os
import subprocess
from typing import Dict, List, Mapping, Optional

from nodeboot.config import RuntimeConfig
from nodeboot.errors import LaunchError

log = logging.getLogger(__name__)


def node_args(cfg: RuntimeConfig) -> List[str]:
    """Command-line flags for the node. Order and `=`/space forms are part of the contract."""
    return [
        f"--role={cfg.role}",
        f"--csi-endpoint={cfg.csi_endpoint}",
        f"--csi-worker-port={cfg.csi_worker_port}",
        f"--node-name={cfg.node_name}",
        f"--node-ip={cfg.node_ip}",
        f"--csi-driver-name={cfg.csi_driver_name}",
        f"--mount-path={cfg.mount_dir}",
        f"--kv-server-list={cfg.etcd_endpoint}",
        "--storage-s3-access-key-id", cfg.s3_access_key_id,
        "--storage-s3-secret-access-key", cfg.s3_secret_access_key,
        "--storage-s3-bucket", cfg.s3_bucket,
        "--storage-s3-endpoint-url", cfg.s3_endpoint_url,
        f"--storage-cache-capacity={cfg.cache_capacity}",
        f"--server-port={cfg.server_port}",
        f"--storage-type={cfg.storage_type}",
    ]


def create_mount_dir(path: str) -> None:
    """Non-recursive mkdir; the parent must already exist."""
    log.info("Mounting... ... ... ...")
    try:
        os.mkdir(path)
    except OSError as e:
        raise LaunchError(f"Failed to create mount point {path}: {e.strerror or e}") from e


def _flush_logs() -> None:
    for handler in logging.getLogger().handlers:
        handler.flush()


def _exec(cfg: RuntimeConfig, argv: List[str], env: Dict[str, str]) -> None:
    _flush_logs()
    prev_cwd = os.getcwd()
    try:
        os.chdir(cfg.repo_dir)
        os.execve(argv[0], argv, env)
    except OSError as e:
        os.chdir(prev_cwd)
        raise LaunchError(f"Failed to start datenlord: {e}") from e


def _spawn(cfg: RuntimeConfig, argv: List[str], env: Dict[str, str]) -> int:
    try:
        proc = subprocess.Popen(argv, cwd=cfg.repo_dir, env=env, start_new_session=True)
    except OSError as e:
        raise LaunchError(f"Failed to start datenlord: {e}") from e
    try:
        rc = proc.wait(timeout=cfg.startup_grace_sec)
    except subprocess.TimeoutExpired:
        log.info(f"datenlord started (pid={proc.pid})")
        return proc.pid
    raise LaunchError(f"datenlord exited during startup with status {rc}")


def launch(cfg: RuntimeConfig, environ: Optional[Mapping[str, str]] = None) -> Optional[int]:
    """Start the node. Returns the child pid in spawn mode; exec mode does not return."""
    binary = cfg.node_binary_path
    if not binary.is_file():
        raise LaunchError(f"Node binary not found: {binary}")
    argv = [str(binary)] + node_args(cfg)
    env = cfg.child_env(environ)

    log.info("Starting datenlord.. ... ... ...")
    log.debug(f"Node command: {' '.join(argv)}")
    if cfg.launch_mode == "spawn":
        return _spawn(cfg, argv, env)
    _exec(cfg, argv, env)
    return None

"""Readiness probe for the etcd key-value backend the node registers with."""

from __future__ import annotations

import logging
import time
from typing import Any, Optional

import requests

from nodeboot.errors import KVUnavailableError

log = logging.getLogger(__name__)


def _health_url(endpoint: str) -> str:
    endpoint = endpoint.strip().rstrip("/")
    if "://" not in endpoint:
        endpoint = f"http://{endpoint}"
    return f"{endpoint}/health"


def kv_healthy(endpoint: str, timeout_sec: float = 5.0) -> bool:
    """One probe of etcd's /health endpoint."""
    try:
        resp = requests.get(_health_url(endpoint), timeout=timeout_sec)
        resp.raise_for_status()
        body: Any = resp.json()
    except Exception:
        log.debug(f"KV health probe against {endpoint} failed", exc_info=True)
        return False
    if not isinstance(body, dict):
        log.debug(f"Unexpected KV health body from {endpoint}: {body!r}")
        return False
    return str(body.get("health", "")).lower() == "true"


def wait_for_kv(endpoint: str, wait_sec: float = 30.0, interval_sec: float = 1.0,
                probe_timeout_sec: Optional[float] = None) -> None:
    """Block until the KV backend is healthy or ``wait_sec`` elapses."""
    deadline = time.monotonic() + wait_sec
    probe_timeout = probe_timeout_sec or max(0.5, min(5.0, wait_sec))
    log.info(f"Waiting for KV backend at {endpoint}")
    while True:
        if kv_healthy(endpoint, timeout_sec=probe_timeout):
            log.info(f"KV backend at {endpoint} is healthy")
            return
        if time.monotonic() >= deadline:
            raise KVUnavailableError(f"KV backend at {endpoint} not healthy within {wait_sec:g}s")
        time.sleep(interval_sec)

import json
import os
import shlex
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

from nodeboot.errors import ConfigError, ResolutionError


DEFAULT_CONFIG_PATH = Path("nodeboot.config.json")
DEFAULT_BIND_MOUNTER = "../target/debug/bind_mounter"
DEFAULT_MOUNT_DIR = "/tmp/datenlord_data_dir"
LAUNCH_MODES = {"exec", "spawn"}

# Config key -> environment variable. A variable already present in the
# caller's environment wins over both the defaults and the config file.
ENV_OVERRIDES: Dict[str, str] = {
    "controller_socket_file": "CONTROLLER_SOCKET_FILE",
    "node_socket_file": "NODE_SOCKET_FILE",
    "bind_mounter": "BIND_MOUNTER",
    "etcd_endpoint": "ETCD_END_POINT",
    "rust_log": "RUST_LOG",
    "rust_backtrace": "RUST_BACKTRACE",
    "mount_dir": "DATENLORD_LOCAL_BIND_DIR",
    "repo_dir": "NODEBOOT_REPO_DIR",
    "cargo_cmd": "NODEBOOT_CARGO",
    "launch_mode": "NODEBOOT_LAUNCH_MODE",
}


@dataclass(frozen=True)
class RuntimeConfig:
    bind_mounter: str
    repo_dir: str
    mount_dir: str = DEFAULT_MOUNT_DIR
    controller_socket_file: str = "/tmp/controller.sock"
    node_socket_file: str = "/tmp/node.sock"
    etcd_endpoint: str = "127.0.0.1:2379"
    rust_log: str = "debug"
    rust_backtrace: str = "1"
    node_binary: str = "target/debug/datenlord"
    cargo_cmd: str = "cargo"
    unmount_cmd: Tuple[str, ...] = ("fusermount", "-u")
    mounts_file: str = "/proc/self/mounts"
    role: str = "node"
    csi_worker_port: int = 0
    node_name: str = "localhost"
    node_ip: str = "127.0.0.1"
    csi_driver_name: str = "io.datenlord.csi.plugin"
    s3_access_key_id: str = "test"
    s3_secret_access_key: str = "test1234"
    s3_bucket: str = "fuse-test-bucket"
    s3_endpoint_url: str = "http://127.0.0.1:9000"
    cache_capacity: int = 1073741824
    server_port: int = 8800
    storage_type: str = "none"
    build_timeout_sec: Optional[float] = None
    unmount_timeout_sec: Optional[float] = None
    launch_mode: str = "exec"
    startup_grace_sec: float = 2.0
    check_kv: bool = False
    kv_wait_sec: float = 30.0

    @property
    def csi_endpoint(self) -> str:
        return f"unix://{self.node_socket_file}"

    @property
    def node_binary_path(self) -> Path:
        return Path(self.repo_dir) / self.node_binary

    def env_vars(self) -> Dict[str, str]:
        """Variables the build tool and the node expect to find."""
        return {
            "CONTROLLER_SOCKET_FILE": self.controller_socket_file,
            "NODE_SOCKET_FILE": self.node_socket_file,
            "BIND_MOUNTER": self.bind_mounter,
            "ETCD_END_POINT": self.etcd_endpoint,
            "RUST_LOG": self.rust_log,
            "RUST_BACKTRACE": self.rust_backtrace,
            "DATENLORD_LOCAL_BIND_DIR": self.mount_dir,
        }

    def child_env(self, base: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
        """Environment for a child process; our own os.environ stays untouched."""
        env = dict(os.environ if base is None else base)
        env.update(self.env_vars())
        return env


def resolve_helper_path(raw: str, base_dir: Path) -> str:
    """Make ``raw`` absolute the way ``realpath`` does.

    Every component but the last must exist; the helper itself may not have
    been built yet.
    """
    p = Path(raw).expanduser()
    if not p.is_absolute():
        p = Path(base_dir) / p
    if not p.name:
        raise ResolutionError(f"Cannot resolve helper path: {raw!r}")
    try:
        parent = p.parent.resolve(strict=True)
    except (OSError, RuntimeError) as e:
        raise ResolutionError(f"Cannot resolve helper path {raw}: {e}") from e
    if not parent.is_dir():
        raise ResolutionError(f"Cannot resolve helper path {raw}: {parent} is not a directory")
    return str((parent / p.name).resolve())


def _int(data: Dict[str, Any], key: str, default: int, minimum: int = 0) -> int:
    try:
        val = int(data.get(key, default))
    except (TypeError, ValueError):
        val = default
    return max(minimum, val)


def _float(data: Dict[str, Any], key: str, default: float, minimum: float = 0.0) -> float:
    try:
        val = float(data.get(key, default))
    except (TypeError, ValueError):
        val = default
    return max(minimum, val)


def _optional_float(data: Dict[str, Any], key: str) -> Optional[float]:
    raw = data.get(key)
    if raw is None or str(raw).strip() == "":
        return None
    try:
        val = float(raw)
    except (TypeError, ValueError):
        raise ConfigError(f"{key} must be a number of seconds, got {raw!r}")
    return val if val > 0 else None


def _bool(data: Dict[str, Any], key: str, default: bool) -> bool:
    raw = data.get(key, default)
    if isinstance(raw, str):
        return raw.strip().lower() in {"1", "true", "yes", "on"}
    return bool(raw)


def _str(data: Dict[str, Any], key: str, default: str) -> str:
    val = data.get(key)
    if val is None:
        return default
    return str(val).strip() or default


def _command(data: Dict[str, Any], key: str, default: Tuple[str, ...]) -> Tuple[str, ...]:
    raw = data.get(key)
    if not raw:
        return tuple(default)
    if isinstance(raw, str):
        return tuple(shlex.split(raw))
    return tuple(str(part) for part in raw)


def _read_config_file(path: Optional[str], environ: Mapping[str, str]) -> Dict[str, Any]:
    explicit = path or environ.get("NODEBOOT_CONFIG")
    cfg_path = Path(explicit or DEFAULT_CONFIG_PATH).expanduser().resolve()
    if not cfg_path.exists():
        if explicit:
            raise ConfigError(f"Config file not found: {cfg_path}")
        return {}
    try:
        data = json.loads(cfg_path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        raise ConfigError(f"Cannot read config file {cfg_path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {cfg_path} must hold a JSON object")
    return data


def load_runtime_config(path: Optional[str] = None,
                        environ: Optional[Mapping[str, str]] = None) -> RuntimeConfig:
    env = os.environ if environ is None else environ
    data = _read_config_file(path, env)
    for key, var in ENV_OVERRIDES.items():
        val = str(env.get(var, "")).strip()
        if val:
            data[key] = val

    repo_dir = Path(data.get("repo_dir") or Path.cwd()).expanduser().resolve()
    bind_mounter = resolve_helper_path(_str(data, "bind_mounter", DEFAULT_BIND_MOUNTER), repo_dir)
    mount_dir = os.path.abspath(os.path.join(str(repo_dir), os.path.expanduser(_str(data, "mount_dir", DEFAULT_MOUNT_DIR))))

    launch_mode = _str(data, "launch_mode", "exec").lower()
    if launch_mode not in LAUNCH_MODES:
        raise ConfigError("launch_mode must be one of: exec, spawn")

    return RuntimeConfig(
        bind_mounter=bind_mounter,
        repo_dir=str(repo_dir),
        mount_dir=mount_dir,
        controller_socket_file=_str(data, "controller_socket_file", "/tmp/controller.sock"),
        node_socket_file=_str(data, "node_socket_file", "/tmp/node.sock"),
        etcd_endpoint=_str(data, "etcd_endpoint", "127.0.0.1:2379"),
        rust_log=_str(data, "rust_log", "debug"),
        rust_backtrace=_str(data, "rust_backtrace", "1"),
        node_binary=_str(data, "node_binary", "target/debug/datenlord"),
        cargo_cmd=_str(data, "cargo_cmd", "cargo"),
        unmount_cmd=_command(data, "unmount_cmd", ("fusermount", "-u")),
        mounts_file=_str(data, "mounts_file", "/proc/self/mounts"),
        role=_str(data, "role", "node"),
        csi_worker_port=_int(data, "csi_worker_port", 0),
        node_name=_str(data, "node_name", "localhost"),
        node_ip=_str(data, "node_ip", "127.0.0.1"),
        csi_driver_name=_str(data, "csi_driver_name", "io.datenlord.csi.plugin"),
        s3_access_key_id=_str(data, "s3_access_key_id", "test"),
        s3_secret_access_key=_str(data, "s3_secret_access_key", "test1234"),
        s3_bucket=_str(data, "s3_bucket", "fuse-test-bucket"),
        s3_endpoint_url=_str(data, "s3_endpoint_url", "http://127.0.0.1:9000"),
        cache_capacity=_int(data, "cache_capacity", 1073741824, minimum=1),
        server_port=_int(data, "server_port", 8800, minimum=1),
        storage_type=_str(data, "storage_type", "none"),
        build_timeout_sec=_optional_float(data, "build_timeout_sec"),
        unmount_timeout_sec=_optional_float(data, "unmount_timeout_sec"),
        launch_mode=launch_mode,
        startup_grace_sec=_float(data, "startup_grace_sec", 2.0),
        check_kv=_bool(data, "check_kv", False),
        kv_wait_sec=_float(data, "kv_wait_sec", 30.0, minimum=1.0),
    )

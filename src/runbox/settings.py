from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict

import structlog
import yaml
from pydantic_settings import BaseSettings, SettingsConfigDict

log = structlog.get_logger(__name__)


class Settings(BaseSettings):
    # ---- server ----
    host: str = "0.0.0.0"
    port: int = 3001
    log_level: str = "INFO"

    # ---- paths ----
    temp_dir: Path = Path("temp")
    history_url: str = "sqlite:///./runbox.db"

    # ---- container runtime ----
    docker_bin: str = "docker"
    container_prefix: str = "runbox-"
    default_language: str = "python"

    # ---- per-execution limits (operator only, never client supplied) ----
    timeout_s: float = 30
    memory: str = "512m"
    cpus: str = "0.5"
    pids_limit: int = 256
    mount_point: str = "/code"

    # ---- teardown ----
    remove_retry_delay_s: float = 0.5
    teardown_wait_s: float = 5

    # ---- language overrides (read from YAML) ----
    languages: Dict[str, Any] = {}

    # env prefix RUNBOX_*
    model_config = SettingsConfigDict(env_prefix="RUNBOX_", extra="ignore")


def _section(data: Dict[str, Any], key: str) -> Dict[str, Any]:
    value = data.get(key) or {}
    return value if isinstance(value, dict) else {}


def load_settings() -> Settings:
    # 0) base from env RUNBOX_*
    s = Settings()

    # 1) conf/runbox.yaml (or RUNBOX_CONF)
    conf = os.environ.get("RUNBOX_CONF", "conf/runbox.yaml")
    try:
        with open(conf, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (FileNotFoundError, yaml.YAMLError):
        data = {}
    if not isinstance(data, dict):
        data = {}

    server = _section(data, "server")
    execution = _section(data, "execution")
    teardown = _section(data, "teardown")

    # 2) merge into Settings with the right types
    try:
        update = {
            "host": str(server.get("host", s.host)),
            "port": int(server.get("port", s.port)),
            "log_level": str(server.get("log_level", s.log_level)),
            "temp_dir": Path(str(data.get("temp_dir", s.temp_dir))),
            "history_url": str(data.get("history_url", s.history_url)),
            "docker_bin": str(data.get("docker_bin", s.docker_bin)),
            "container_prefix": str(data.get("container_prefix", s.container_prefix)),
            "default_language": str(data.get("default_language", s.default_language)),
            "timeout_s": float(execution.get("timeout_s", s.timeout_s)),
            "memory": str(execution.get("memory", s.memory)),
            "cpus": str(execution.get("cpus", s.cpus)),
            "pids_limit": int(execution.get("pids_limit", s.pids_limit)),
            "mount_point": str(execution.get("mount_point", s.mount_point)),
            "remove_retry_delay_s": float(teardown.get("remove_retry_delay_s", s.remove_retry_delay_s)),
            "teardown_wait_s": float(teardown.get("wait_s", s.teardown_wait_s)),
            "languages": _section(data, "languages") or s.languages,
        }
    except (TypeError, ValueError) as e:
        log.warning("settings.yaml_invalid", conf=conf, err=str(e))
        return s
    return s.model_copy(update=update)

import os
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

ENV_TRUE = {"1", "true", "yes", "on"}


def _default_config_dir() -> str:
    return str(Path.home() / ".config" / "runtimectl")


def _default_state_dir() -> str:
    base = os.getenv("XDG_STATE_HOME") or str(Path.home() / ".local" / "state")
    return str(Path(base) / "runtimectl")


class EngineSettings(BaseModel):
    config_dir: str = Field(default_factory=_default_config_dir)
    state_dir: str = Field(default_factory=_default_state_dir)
    # A lock older than this is reclaimed without asking.
    stale_lock_s: int = 60 * 60
    probe_log_path: str = "/tmp/llama-server.log"
    probe_log_lines: int = 5
    dynamic_probe_defaults: bool = True
    sudo_password_env: str = "RUNTIMECTL_SUDO_PASSWORD"
    log_level: str = "INFO"

    model_config = {"protected_namespaces": ()}

    @property
    def runtimes_path(self) -> Path:
        return Path(self.config_dir) / "runtimes.json"

    @property
    def lock_path(self) -> Path:
        return Path(self.state_dir) / "runtime.lock"

    @property
    def active_path(self) -> Path:
        return Path(self.state_dir) / "runtime-active.json"


def _load_from_env() -> dict:
    load_dotenv()
    env_map = {
        "config_dir": os.getenv("RUNTIMECTL_CONFIG_DIR"),
        "state_dir": os.getenv("RUNTIMECTL_STATE_DIR"),
        "stale_lock_s": os.getenv("RUNTIMECTL_STALE_LOCK_S"),
        "probe_log_path": os.getenv("RUNTIMECTL_PROBE_LOG"),
        "dynamic_probe_defaults": os.getenv("RUNTIMECTL_DYNAMIC_PROBE"),
        "log_level": os.getenv("RUNTIMECTL_LOG_LEVEL"),
    }
    cleaned = {k: v for k, v in env_map.items() if v not in (None, "")}
    if "stale_lock_s" in cleaned:
        cleaned["stale_lock_s"] = int(cleaned["stale_lock_s"])
    if "dynamic_probe_defaults" in cleaned:
        cleaned["dynamic_probe_defaults"] = str(cleaned["dynamic_probe_defaults"]).lower() in ENV_TRUE
    if "log_level" in cleaned:
        cleaned["log_level"] = str(cleaned["log_level"]).upper()
    return cleaned


def load_settings(overrides: Optional[Dict[str, Any]] = None) -> EngineSettings:
    """Build settings from the environment (and a .env file); explicit overrides win."""
    merged = {**_load_from_env(), **(overrides or {})}
    return EngineSettings(**merged)

import json
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from dotenv import load_dotenv

from .env import DEFAULT_SHADOWED_ENV_VARS

CONFIG_PATH = Path("config.json")
ENV_OVERRIDE_KEY = "PROCBROKER_ENV_OVERRIDES_CONFIG"
ENV_OVERRIDE_TRUE = {"1", "true", "yes", "on"}


class AppSettings(BaseModel):
    # Subprocess path
    cli_path: str = "claude"
    max_concurrent: int = Field(default=3, ge=1)
    default_timeout_s: float = Field(default=120.0, gt=0)
    grace_period_s: float = Field(default=2.0, gt=0)
    status_ttl_s: float = Field(default=5.0, ge=0)
    check_timeout_s: float = Field(default=5.0, gt=0)
    artifact_dir: Optional[str] = None
    shadowed_env_vars: List[str] = Field(default_factory=lambda: list(DEFAULT_SHADOWED_ENV_VARS))
    prefer_cli: bool = True

    # Remote API fallback
    anthropic_api_key: Optional[str] = None
    anthropic_base_url: str = "https://api.anthropic.com/v1"
    anthropic_model: str = "claude-sonnet-4-20250514"
    remote_max_tokens: int = 2048

    host: str = "0.0.0.0"
    port: int = 8000

    def to_safe_dict(self) -> dict:
        data = self.model_dump()
        if data.get("anthropic_api_key"):
            data["anthropic_api_key"] = "********"
        return data

    model_config = {"protected_namespaces": ()}


def _ms_to_s(value: str) -> float:
    return float(value) / 1000.0


def _load_from_env() -> dict:
    load_dotenv()
    env_map = {
        "cli_path": os.getenv("CLAUDE_CLI_PATH"),
        "max_concurrent": os.getenv("CLAUDE_CLI_MAX_CONCURRENT"),
        "default_timeout_s": os.getenv("CLAUDE_CLI_TIMEOUT"),
        "grace_period_s": os.getenv("CLAUDE_CLI_GRACE_MS"),
        "artifact_dir": os.getenv("PROCBROKER_ARTIFACT_DIR"),
        "prefer_cli": os.getenv("PROCBROKER_PREFER_CLI"),
        "anthropic_api_key": os.getenv("ANTHROPIC_API_KEY"),
        "anthropic_base_url": os.getenv("ANTHROPIC_BASE_URL"),
        "anthropic_model": os.getenv("ANTHROPIC_MODEL"),
        "host": os.getenv("HOST"),
        "port": os.getenv("PORT"),
    }
    cleaned = {k: v for k, v in env_map.items() if v not in (None, "")}
    if "max_concurrent" in cleaned:
        cleaned["max_concurrent"] = int(cleaned["max_concurrent"])
    # Timeouts are given in milliseconds in the environment.
    if "default_timeout_s" in cleaned:
        cleaned["default_timeout_s"] = _ms_to_s(cleaned["default_timeout_s"])
    if "grace_period_s" in cleaned:
        cleaned["grace_period_s"] = _ms_to_s(cleaned["grace_period_s"])
    if "prefer_cli" in cleaned:
        cleaned["prefer_cli"] = str(cleaned["prefer_cli"]).lower() in ENV_OVERRIDE_TRUE
    if "port" in cleaned:
        cleaned["port"] = int(cleaned["port"])
    return cleaned


def _env_overrides_config() -> bool:
    return str(os.getenv(ENV_OVERRIDE_KEY, "")).strip().lower() in ENV_OVERRIDE_TRUE


def load_settings(config_path: Optional[Path] = None) -> AppSettings:
    env_data = _load_from_env()
    path = config_path or CONFIG_PATH
    file_data: Dict[str, Any] = {}
    if path.exists():
        try:
            file_data = json.loads(path.read_text())
        except (OSError, ValueError):
            file_data = {}
    # Config wins by default; allow env overrides only when explicitly enabled.
    if _env_overrides_config():
        merged = {**file_data, **env_data}
    else:
        merged = {**env_data, **file_data}
    # The API key is never persisted to config.json, so the environment always supplies it.
    if not merged.get("anthropic_api_key") and env_data.get("anthropic_api_key"):
        merged["anthropic_api_key"] = env_data["anthropic_api_key"]
    return AppSettings(**merged)


def save_settings(settings: AppSettings, config_path: Optional[Path] = None) -> None:
    path = config_path or CONFIG_PATH
    data = settings.model_dump()
    data.pop("anthropic_api_key", None)
    path.write_text(json.dumps(data, indent=2))

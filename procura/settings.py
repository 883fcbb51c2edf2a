import json
import os
from pathlib import Path
from typing import Dict, Any, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

SETTINGS_FILE = Path(os.getenv("PROCURA_SETTINGS_FILE", ".procura/user_settings.json"))
ENV_FILE = Path(".env")
_SETTINGS_CACHE: Optional[Dict[str, Any]] = None


def set_settings_file(path: Path):
    global SETTINGS_FILE, _SETTINGS_CACHE
    SETTINGS_FILE = Path(path)
    _SETTINGS_CACHE = None


def load_env():
    # Keep tests hermetic: avoid re-injecting host .env values after monkeypatch.delenv.
    if os.environ.get("PYTEST_CURRENT_TEST"):
        return
    if ENV_FILE.exists():
        load_dotenv(ENV_FILE, override=False)


def load_user_settings() -> Dict[str, Any]:
    """Loads settings from the project root with caching."""
    global _SETTINGS_CACHE
    if _SETTINGS_CACHE is not None:
        return _SETTINGS_CACHE

    if SETTINGS_FILE.exists():
        try:
            with SETTINGS_FILE.open("r", encoding="utf-8") as f:
                payload = json.load(f)
        except (json.JSONDecodeError, OSError):
            return {}
        if isinstance(payload, dict):
            _SETTINGS_CACHE = payload
            return _SETTINGS_CACHE
    return {}


def get_setting(key: str, default: Any = None) -> Any:
    # Check environment first (UPPERCASE)
    env_val = os.environ.get(key.upper())
    if env_val is not None:
        return env_val

    settings = load_user_settings()
    return settings.get(key.lower(), default)


def _get_int(key: str, default: int) -> int:
    try:
        return int(get_setting(key, default))
    except (TypeError, ValueError):
        return default


def _get_float(key: str, default: float) -> float:
    try:
        return float(get_setting(key, default))
    except (TypeError, ValueError):
        return default


def _get_str(key: str) -> str:
    return str(get_setting(key, "") or "").strip()


class EngineSettings(BaseModel):
    """Typed view over environment + user settings consumed by the runtime."""

    db_path: Path = Path(".procura/procura.db")
    memory_db_path: Path = Path(".procura/memory.db")
    workspace: Path = Path("workspace/default")

    call_batch_size: int = Field(default=3, ge=1)
    batch_pause_seconds: float = Field(default=2.0, ge=0.0)
    target_price_ratio: float = Field(default=0.87, gt=0.0, le=1.0)
    watchdog_timeout_seconds: float = Field(default=45.0, gt=0.0)
    lookup_retry_delay_seconds: float = Field(default=1.0, ge=0.0)
    memory_top_k: int = Field(default=5, ge=1)

    voice_api_key: str = ""
    voice_api_base_url: str = "https://api.elevenlabs.io"
    voice_phone_number_id: str = ""
    voice_agent_ids: Dict[str, str] = Field(default_factory=dict)
    voice_test_phone_override: str = ""
    voice_webhook_secret: str = ""

    reasoning_model: str = ""
    reasoning_host: str = ""
    reasoning_timeout_seconds: float = Field(default=20.0, gt=0.0)

    mail_api_key: str = ""
    mail_api_base_url: str = "https://api.agentmail.to/v0"
    mail_inbox_id: str = ""
    mail_recipient_override: str = ""

    rate_limit_per_minute: int = Field(default=120, ge=1)


def load_engine_settings() -> EngineSettings:
    load_env()
    return EngineSettings(
        db_path=Path(_get_str("procura_db_path") or ".procura/procura.db"),
        memory_db_path=Path(_get_str("procura_memory_db_path") or ".procura/memory.db"),
        workspace=Path(_get_str("procura_workspace") or "workspace/default"),
        call_batch_size=_get_int("procura_call_batch_size", 3),
        batch_pause_seconds=_get_float("procura_batch_pause_seconds", 2.0),
        target_price_ratio=_get_float("procura_target_price_ratio", 0.87),
        watchdog_timeout_seconds=_get_float("procura_watchdog_timeout_seconds", 45.0),
        lookup_retry_delay_seconds=_get_float("procura_lookup_retry_delay_seconds", 1.0),
        memory_top_k=_get_int("procura_memory_top_k", 5),
        voice_api_key=_get_str("voice_api_key"),
        voice_api_base_url=_get_str("voice_api_base_url") or "https://api.elevenlabs.io",
        voice_phone_number_id=_get_str("voice_phone_number_id"),
        voice_agent_ids={
            "quote": _get_str("voice_agent_id_quote"),
            "negotiate": _get_str("voice_agent_id_negotiate"),
            "confirm": _get_str("voice_agent_id_confirm"),
        },
        voice_test_phone_override=_get_str("voice_test_phone_override"),
        voice_webhook_secret=_get_str("voice_webhook_secret"),
        reasoning_model=_get_str("procura_reasoning_model"),
        reasoning_host=_get_str("ollama_host"),
        reasoning_timeout_seconds=_get_float("procura_reasoning_timeout_seconds", 20.0),
        mail_api_key=_get_str("mail_api_key"),
        mail_api_base_url=_get_str("mail_api_base_url") or "https://api.agentmail.to/v0",
        mail_inbox_id=_get_str("mail_inbox_id"),
        mail_recipient_override=_get_str("mail_recipient_override"),
        rate_limit_per_minute=_get_int("procura_rate_limit", 120),
    )

import os
from typing import List, Literal, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict

load_dotenv(".venv/.env")


def require_env(var_name: str, default: Optional[str] = None) -> str:
    val = os.getenv(var_name)
    if not val:
        if default is None:
            raise ValueError(f"Missing required environment variable: {var_name}")
        val = default
    return val


def _int_env(var_name: str, default: int) -> int:
    raw = require_env(var_name, str(default))
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"Environment variable {var_name} must be an integer, got {raw!r}") from None


def _list_env(var_name: str, default: str) -> List[str]:
    return [item.strip() for item in require_env(var_name, default).split(",") if item.strip()]


class BridgeSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    agent_base_url: str = "http://localhost:4096"
    default_provider: str = "openai"
    default_model: str = "gpt-5.2"

    tool_whitelist: List[str] = ["Read", "Glob", "Grep", "Task"]
    permission_timeout: float = 60.0          # seconds

    stream_update_interval: float = 0.5       # card streaming throttle, seconds
    output_update_interval: float = 3.0       # bulk text aggregation throttle, seconds
    turn_wait_window: float = 180.0           # synchronous wait before going delayed
    max_message_length: int = 4000

    ledger_capacity: int = 20

    store_backend: Literal["json", "memory", "firestore"] = "json"
    store_path: str = ".conversations.json"
    secrets_dir: str = ".secrets"


def load_settings() -> BridgeSettings:
    host = require_env("OPENCODE_HOST", "localhost")
    port = _int_env("OPENCODE_PORT", 4096)
    backend = require_env("STORE_BACKEND", "json").lower()
    if backend not in ("json", "memory", "firestore"):
        raise ValueError(f"STORE_BACKEND must be json, memory or firestore, got {backend!r}")

    return BridgeSettings(
        agent_base_url=f"http://{host}:{port}",
        default_provider=require_env("DEFAULT_PROVIDER", "openai"),
        default_model=require_env("DEFAULT_MODEL", "gpt-5.2"),
        tool_whitelist=_list_env("TOOL_WHITELIST", "Read,Glob,Grep,Task"),
        permission_timeout=float(_int_env("PERMISSION_TIMEOUT_SECONDS", 60)),
        stream_update_interval=_int_env("STREAM_UPDATE_INTERVAL_MS", 500) / 1000,
        output_update_interval=_int_env("OUTPUT_UPDATE_INTERVAL_MS", 3000) / 1000,
        turn_wait_window=float(_int_env("TURN_WAIT_WINDOW_SECONDS", 180)),
        max_message_length=_int_env("MAX_MESSAGE_LENGTH", 4000),
        ledger_capacity=_int_env("LEDGER_CAPACITY", 20),
        store_backend=backend,
        store_path=require_env("STORE_PATH", ".conversations.json"),
        secrets_dir=require_env("SECRETS_DIR", ".secrets"),
    )

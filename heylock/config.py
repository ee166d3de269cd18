import os
from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, StrictBool, StrictStr

# Load .env from current directory so HEYLOCK_* settings are picked up automatically.
load_dotenv()

MAX_MESSAGE_LENGTH = 10_000
MAX_CONTEXT_ENTRY_LENGTH = 2_000
SHOULD_ENGAGE_THROTTLING_SECONDS = 15.0
RATE_LIMIT_HEADER = "x-ratelimit-remaining"
STORAGE_PRODUCT = "heylock"
DEFAULT_AGENT_IDENTITY = "default"


class Settings(BaseModel):
    """Runtime configuration loaded from environment variables."""

    api_url: str = "https://heylock.dev/api"
    timeout: float = 30.0
    storage_path: Optional[str] = None
    suppress_warnings: bool = False

    verify_path: str = "/internal/verifyKey"
    limits_path: str = "/v1/limits"
    message_path: str = "/v1/message"
    should_engage_path: str = "/v1/should-engage"
    rewrite_path: str = "/v1/rewrite"
    sort_path: str = "/v1/sort"


@lru_cache(maxsize=1)
def _base_settings() -> Settings:
    """
    Base settings lookup.

    Only the defaults are cached; `get_settings` re-reads the environment on
    each call so tests can change HEYLOCK_* variables between agents.
    """

    return Settings()


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def get_settings() -> Settings:
    """Return Settings built from the *current* environment."""

    base = _base_settings()
    api_url = (os.getenv("HEYLOCK_API_URL") or base.api_url).rstrip("/")
    timeout_raw = os.getenv("HEYLOCK_TIMEOUT")
    timeout = float(timeout_raw) if timeout_raw else base.timeout
    storage_path = os.getenv("HEYLOCK_STORAGE_PATH") or base.storage_path

    return Settings(
        api_url=api_url,
        timeout=timeout,
        storage_path=storage_path,
        suppress_warnings=_env_flag("HEYLOCK_SUPPRESS_WARNINGS", base.suppress_warnings),
    )


class AgentOptions(BaseModel):
    """
    Per-agent options.

    `use_storage=None` means "persist when a storage backend is available".
    Booleans are strict so `use_storage="yes"` is rejected instead of coerced.
    """

    model_config = ConfigDict(frozen=True)

    use_storage: Optional[StrictBool] = None
    use_message_history: StrictBool = True
    suppress_warnings: Optional[StrictBool] = None
    agent_identity: StrictStr = Field(default=DEFAULT_AGENT_IDENTITY, min_length=1)

import logging
import os
from typing import Literal, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict

logger = logging.getLogger(__name__)

__all__ = ["Settings", "load_settings"]


def _parse_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("%s=%r is not an integer, falling back to %s", name, raw, default)
        return default


def _parse_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("%s=%r is not a number, falling back to %s", name, raw, default)
        return default


class Settings(BaseModel):
    model_config = ConfigDict(frozen=True)

    # "firestore" in production, "memory" for local runs without credentials
    store_backend: Literal["firestore", "memory"] = "memory"
    secrets_dir: str = ".secrets"
    firebase_credentials: Optional[str] = None

    reminders_collection: str = "reminders"
    family_members_collection: str = "family_members"
    notifications_collection: str = "scheduled_notifications"

    default_timezone: str = "Europe/London"
    cache_ttl_seconds: int = 300
    page_size: int = 50
    transport_timeout_seconds: float = 10.0

    log_level: str = "INFO"

    @property
    def firebase_credentials_path(self) -> str:
        return self.firebase_credentials or os.path.join(self.secrets_dir, "firebase.json")


def load_settings(env_file: Optional[str] = ".env") -> Settings:
    """Read settings from the environment (after loading `env_file` when present)."""
    if env_file:
        load_dotenv(env_file)

    backend = os.getenv("STORE_BACKEND", "memory").strip().lower()
    if backend not in ("firestore", "memory"):
        logger.warning("STORE_BACKEND=%r is not supported, using in-memory store", backend)
        backend = "memory"

    page_size = _parse_int("PAGE_SIZE", 50)
    if page_size <= 0:
        logger.warning("PAGE_SIZE must be positive, using 50")
        page_size = 50

    return Settings(
        store_backend=backend,
        secrets_dir=os.getenv("SECRETS_DIR", ".secrets"),
        firebase_credentials=os.getenv("FIREBASE_CREDENTIALS") or None,
        reminders_collection=os.getenv("REMINDERS_COLLECTION", "reminders"),
        family_members_collection=os.getenv("FAMILY_MEMBERS_COLLECTION", "family_members"),
        notifications_collection=os.getenv("NOTIFICATIONS_COLLECTION", "scheduled_notifications"),
        default_timezone=os.getenv("DEFAULT_TIMEZONE", "Europe/London"),
        cache_ttl_seconds=_parse_int("CACHE_TTL_SECONDS", 300),
        page_size=page_size,
        transport_timeout_seconds=_parse_float("TRANSPORT_TIMEOUT_SECONDS", 10.0),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )

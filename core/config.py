"""Application settings and feature flags.

Settings are read from the environment after loading a ``.env`` file from the
repository root when present. Nothing here is global state: callers build a
``Settings`` with ``load_settings()`` (or directly, in tests) and pass it to the
components that need it.
"""

import os
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv


REPO_ROOT = Path(__file__).resolve().parents[1]
DEFAULT_DB_PATH = REPO_ROOT / "closing_ledger.db"

# Storage-layer batch limit; ingestion chunks must stay under it.
MAX_BATCH_SIZE = 500


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class FeatureFlags:
    """External integrations switched on for this deployment.

    All integrations are off in the pilot; they only affect which notification
    channels the API advertises.
    """
    whatsapp_enabled: bool = False
    email_enabled: bool = False
    credit_bureau_enabled: bool = False
    banking_enabled: bool = False

    def is_active(self, flag: str) -> bool:
        """Check a flag by name (e.g. ``"banking_enabled"``)."""
        if not hasattr(self, flag):
            raise ValueError(f"Unknown feature flag: {flag}")
        return bool(getattr(self, flag))

    def to_dict(self) -> dict:
        return {
            "whatsapp_enabled": self.whatsapp_enabled,
            "email_enabled": self.email_enabled,
            "credit_bureau_enabled": self.credit_bureau_enabled,
            "banking_enabled": self.banking_enabled,
        }


@dataclass(frozen=True)
class Settings:
    """Runtime configuration for the closing ledger."""
    db_path: Path = DEFAULT_DB_PATH
    ledger_chunk_size: int = 400
    receivable_due_days: int = 28
    default_commission_rate: Decimal = Decimal("3.0")
    log_level: str = "INFO"
    log_json: bool = False

    temporal_endpoint: Optional[str] = None
    temporal_namespace: str = "default"
    temporal_api_key: Optional[str] = None
    task_queue: str = "closing-default"

    flags: FeatureFlags = field(default_factory=FeatureFlags)

    def __post_init__(self):
        if not 1 <= self.ledger_chunk_size <= MAX_BATCH_SIZE:
            raise ValueError(
                f"ledger_chunk_size must be between 1 and {MAX_BATCH_SIZE}, "
                f"got {self.ledger_chunk_size}"
            )
        if self.receivable_due_days < 0:
            raise ValueError("receivable_due_days cannot be negative")


def load_settings(env_file: Optional[Path] = None) -> Settings:
    """Build Settings from environment variables.

    Reads:
    - CLOSING_DB_PATH: SQLite database file
    - LEDGER_CHUNK_SIZE: events per atomic ingestion batch (1..500)
    - RECEIVABLE_DUE_DAYS: default days from emission to due date
    - DEFAULT_COMMISSION_RATE: percentage for vendors missing from the registry
    - LOG_LEVEL / LOG_JSON: logging configuration
    - TEMPORAL_ENDPOINT / TEMPORAL_NAMESPACE / TEMPORAL_API_KEY / TEMPORAL_TASK_QUEUE
    - FEATURE_WHATSAPP / FEATURE_EMAIL / FEATURE_CREDIT_BUREAU / FEATURE_BANKING

    Args:
        env_file: Optional .env path (defaults to the repository root .env)

    Returns:
        Settings instance
    """
    env_path = env_file or (REPO_ROOT / ".env")
    if env_path.exists():
        load_dotenv(env_path)

    flags = FeatureFlags(
        whatsapp_enabled=_env_bool("FEATURE_WHATSAPP"),
        email_enabled=_env_bool("FEATURE_EMAIL"),
        credit_bureau_enabled=_env_bool("FEATURE_CREDIT_BUREAU"),
        banking_enabled=_env_bool("FEATURE_BANKING"),
    )

    return Settings(
        db_path=Path(os.getenv("CLOSING_DB_PATH", str(DEFAULT_DB_PATH))),
        ledger_chunk_size=int(os.getenv("LEDGER_CHUNK_SIZE", "400")),
        receivable_due_days=int(os.getenv("RECEIVABLE_DUE_DAYS", "28")),
        default_commission_rate=Decimal(os.getenv("DEFAULT_COMMISSION_RATE", "3.0")),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        log_json=_env_bool("LOG_JSON"),
        temporal_endpoint=os.getenv("TEMPORAL_ENDPOINT"),
        temporal_namespace=os.getenv("TEMPORAL_NAMESPACE", "default"),
        temporal_api_key=os.getenv("TEMPORAL_API_KEY"),
        task_queue=os.getenv("TEMPORAL_TASK_QUEUE", "closing-default"),
        flags=flags,
    )

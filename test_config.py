"""
Configuration Test Suite

Settings validation, environment loading (.env via python-dotenv) and
feature flags.
"""

import sqlite3
from decimal import Decimal
from pathlib import Path

import pytest

from core.config import MAX_BATCH_SIZE, FeatureFlags, Settings, load_settings
from core.errors import (
    ClosingLedgerError,
    QuotaExceeded,
    StorageError,
)
from core.storage import db as storage_db
from core.storage.db import init_db, reader, transaction


ENV_VARS = [
    "CLOSING_DB_PATH", "LEDGER_CHUNK_SIZE", "RECEIVABLE_DUE_DAYS",
    "DEFAULT_COMMISSION_RATE", "LOG_LEVEL", "LOG_JSON",
    "TEMPORAL_ENDPOINT", "TEMPORAL_NAMESPACE", "TEMPORAL_API_KEY", "TEMPORAL_TASK_QUEUE",
    "FEATURE_WHATSAPP", "FEATURE_EMAIL", "FEATURE_CREDIT_BUREAU", "FEATURE_BANKING",
]


@pytest.fixture
def clean_env(monkeypatch):
    """Remove configuration variables; anything loaded from .env is undone afterwards."""
    for name in ENV_VARS:
        monkeypatch.setenv(name, "")
        monkeypatch.delenv(name)
    return monkeypatch


class TestSettings:
    """Settings validation."""

    def test_defaults(self):
        settings = Settings()
        assert settings.ledger_chunk_size == 400
        assert settings.receivable_due_days == 28
        assert settings.default_commission_rate == Decimal("3.0")
        assert settings.temporal_endpoint is None

    @pytest.mark.parametrize("chunk", [0, MAX_BATCH_SIZE + 1])
    def test_chunk_size_bounds(self, chunk):
        with pytest.raises(ValueError):
            Settings(ledger_chunk_size=chunk)

    def test_negative_due_days(self):
        with pytest.raises(ValueError):
            Settings(receivable_due_days=-1)


class TestLoadSettings:
    """Environment and .env loading."""

    def test_environment_values(self, clean_env, tmp_path):
        clean_env.setenv("CLOSING_DB_PATH", str(tmp_path / "ledger.db"))
        clean_env.setenv("LEDGER_CHUNK_SIZE", "100")
        clean_env.setenv("DEFAULT_COMMISSION_RATE", "2.5")
        clean_env.setenv("LOG_LEVEL", "debug")
        clean_env.setenv("FEATURE_BANKING", "yes")

        settings = load_settings(tmp_path / "absent.env")

        assert settings.db_path == tmp_path / "ledger.db"
        assert settings.ledger_chunk_size == 100
        assert settings.default_commission_rate == Decimal("2.5")
        assert settings.log_level == "DEBUG"
        assert settings.flags.banking_enabled
        assert not settings.flags.email_enabled

    def test_env_file(self, clean_env, tmp_path):
        env_file = tmp_path / ".env"
        env_file.write_text(
            "TEMPORAL_ENDPOINT=localhost:7233\n"
            "TEMPORAL_TASK_QUEUE=closing-test\n"
            "RECEIVABLE_DUE_DAYS=30\n"
        )

        settings = load_settings(env_file)

        assert settings.temporal_endpoint == "localhost:7233"
        assert settings.task_queue == "closing-test"
        assert settings.receivable_due_days == 30

    def test_environment_wins_over_env_file(self, clean_env, tmp_path):
        env_file = tmp_path / ".env"
        env_file.write_text("TEMPORAL_NAMESPACE=from-file\n")
        clean_env.setenv("TEMPORAL_NAMESPACE", "from-env")

        assert load_settings(env_file).temporal_namespace == "from-env"

    def test_invalid_chunk_size(self, clean_env, tmp_path):
        clean_env.setenv("LEDGER_CHUNK_SIZE", "1000")
        with pytest.raises(ValueError):
            load_settings(tmp_path / "absent.env")


class TestFeatureFlags:
    """Pilot integrations are off unless enabled."""

    def test_all_off_by_default(self):
        flags = FeatureFlags()
        assert not any(flags.to_dict().values())
        assert set(flags.to_dict()) == {
            "whatsapp_enabled", "email_enabled", "credit_bureau_enabled", "banking_enabled"}

    def test_is_active(self):
        flags = FeatureFlags(email_enabled=True)
        assert flags.is_active("email_enabled")
        assert not flags.is_active("whatsapp_enabled")
        with pytest.raises(ValueError):
            flags.is_active("telepathy_enabled")


class TestErrorTaxonomy:
    """Storage errors keep their root cause."""

    def test_storage_error_is_retryable(self):
        error = StorageError("write failed")
        assert isinstance(error, ClosingLedgerError)
        assert error.retryable
        assert error.to_dict()["error"] == "StorageError"

    def test_quota_exceeded_is_storage_error(self):
        assert issubclass(QuotaExceeded, StorageError)


class TestStorageTranslation:
    """sqlite3 failures surface as storage errors and roll back."""

    @pytest.fixture
    def db_path(self, tmp_path):
        path = tmp_path / "ledger.db"
        init_db(path)
        return path

    def _period_count(self, db_path):
        with reader(db_path) as conn:
            return conn.execute("SELECT COUNT(*) FROM ledger_periods").fetchone()[0]

    def test_locked_database_is_quota_exceeded(self, db_path):
        cause = sqlite3.OperationalError("database is locked")

        with pytest.raises(QuotaExceeded) as exc_info:
            with transaction(db_path) as conn:
                conn.execute("INSERT INTO ledger_periods (period) VALUES ('2024-05')")
                raise cause

        assert exc_info.value.retryable
        assert exc_info.value.status_code == 503
        assert exc_info.value.__cause__ is cause
        assert self._period_count(db_path) == 0

    def test_other_sqlite_errors_are_storage_errors(self, db_path):
        with pytest.raises(StorageError) as exc_info:
            with transaction(db_path) as conn:
                conn.execute("SELECT * FROM missing_table")

        assert not isinstance(exc_info.value, QuotaExceeded)
        assert exc_info.value.retryable
        assert isinstance(exc_info.value.__cause__, sqlite3.OperationalError)

    def test_writer_blocked_by_open_transaction(self, db_path, monkeypatch):
        def impatient_connect(path=db_path):
            conn = sqlite3.connect(path, isolation_level=None, timeout=0)
            conn.row_factory = sqlite3.Row
            return conn

        monkeypatch.setattr(storage_db, "connect", impatient_connect)
        holder = sqlite3.connect(db_path, isolation_level=None)
        holder.execute("BEGIN IMMEDIATE")
        try:
            with pytest.raises(QuotaExceeded) as exc_info:
                with transaction(db_path):
                    pass
        finally:
            holder.execute("ROLLBACK")
            holder.close()

        assert "database is locked" in str(exc_info.value)
        assert isinstance(exc_info.value.__cause__, sqlite3.OperationalError)

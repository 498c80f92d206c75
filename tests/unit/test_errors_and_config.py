"""Unit tests for the error taxonomy and settings."""

import pytest

from society_billing.config import Settings, get_settings, reset_settings
from society_billing.errors import (
    BillingError,
    ConcurrencyError,
    ConflictError,
    DuplicatePeriodError,
    FatalCycleError,
    InvalidPeriodError,
    InvalidPolicyError,
    LockedBillError,
    MemberNotFoundError,
    NotFoundError,
    PerMemberError,
    StaleBalanceError,
    ValidationError,
)

pytestmark = pytest.mark.unit


class TestErrors:
    @pytest.mark.parametrize(
        "error_class, parent, status",
        [
            (InvalidPolicyError, ValidationError, 400),
            (InvalidPeriodError, ValidationError, 400),
            (MemberNotFoundError, NotFoundError, 404),
            (DuplicatePeriodError, ConflictError, 409),
            (LockedBillError, ConflictError, 409),
            (StaleBalanceError, ConcurrencyError, 409),
            (FatalCycleError, BillingError, 422),
        ],
    )
    def test_hierarchy_and_status(self, error_class, parent, status):
        error = error_class("boom")
        assert isinstance(error, parent)
        assert isinstance(error, BillingError)
        assert error.http_status == status
        assert error.message == "boom"
        assert str(error) == "boom"

    def test_codes_are_distinct(self):
        codes = {
            cls.code
            for cls in (
                InvalidPolicyError,
                InvalidPeriodError,
                MemberNotFoundError,
                DuplicatePeriodError,
                LockedBillError,
                StaleBalanceError,
                FatalCycleError,
            )
        }
        assert len(codes) == 7

    def test_code_override(self):
        error = ValidationError("bad", code="custom")
        assert error.code == "custom"
        assert ValidationError.code == "validation_error"

    def test_per_member_error_carries_unit(self):
        error = PerMemberError(7, "A-101", "area is negative", code="invalid_policy")
        assert error.member_id == 7
        assert error.unit == "A-101"
        assert error.code == "invalid_policy"
        assert "A-101" in error.message
        assert "area is negative" in error.message


class TestSettings:
    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("DATABASE_URL", raising=False)
        settings = Settings(_env_file=None)
        assert settings.database_url.startswith("sqlite+aiosqlite://")
        assert settings.cycle_max_workers == 8
        assert settings.member_timeout_seconds == 30.0
        assert settings.append_max_retries == 3
        assert settings.default_page_limit == 500
        assert settings.max_page_limit == 1000

    def test_reads_environment(self, monkeypatch):
        monkeypatch.setenv("CYCLE_MAX_WORKERS", "2")
        monkeypatch.setenv("LOG_LEVEL", "DEBUG")
        reset_settings()
        settings = get_settings()
        assert settings.cycle_max_workers == 2
        assert settings.log_level == "DEBUG"

    def test_get_settings_is_cached(self):
        assert get_settings() is get_settings()

    def test_rejects_zero_workers(self, monkeypatch):
        monkeypatch.setenv("CYCLE_MAX_WORKERS", "0")
        with pytest.raises(ValueError):
            Settings(_env_file=None)

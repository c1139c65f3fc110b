import pytest
from decimal import Decimal
from pydantic import ValidationError

from models import (
    MAX_AMOUNT,
    Account,
    AccountResponse,
    TransactionRecord,
    TransactionType,
    format_amount,
)
from config import Settings, TestingSettings, get_settings, get_settings_for_environment


class TestTransactionRecord:
    def test_create_deposit(self):
        record = TransactionRecord(type="deposit", client=1, tx=1, amount=Decimal("100.0"))

        assert record.type == TransactionType.deposit
        assert record.is_root
        assert record.amount == Decimal("100.0000")

    def test_create_dispute_no_amount(self):
        record = TransactionRecord(type="dispute", client=1, tx=1)

        assert record.amount is None
        assert not record.is_root

    def test_withdrawal_requires_amount(self):
        with pytest.raises(ValidationError):
            TransactionRecord(type="withdrawal", client=1, tx=1)

    def test_negative_client_rejected(self):
        with pytest.raises(ValidationError):
            TransactionRecord(type="deposit", client=-1, tx=1, amount=Decimal("1"))

    def test_infinite_amount_rejected(self):
        with pytest.raises(ValidationError):
            TransactionRecord(type="deposit", client=1, tx=1, amount=Decimal("Infinity"))

    def test_negative_amount_rejected(self):
        with pytest.raises(ValidationError):
            TransactionRecord(type="deposit", client=1, tx=1, amount=Decimal("-5"))

    def test_amount_above_bound_rejected(self):
        with pytest.raises(ValidationError):
            TransactionRecord(type="deposit", client=1, tx=1, amount=Decimal("900000000000000000000000"))

    def test_largest_amount_accepted(self):
        record = TransactionRecord(type="withdrawal", client=1, tx=1, amount=MAX_AMOUNT)

        assert record.amount == Decimal("99999999999999.9999")


class TestAccount:
    def test_default_values(self):
        account = Account(client=1)

        assert account.total == Decimal("0")
        assert account.held == Decimal("0")
        assert account.available == Decimal("0")
        assert account.locked is False

    def test_available_property(self):
        account = Account(client=1, total=Decimal("150"), held=Decimal("50"))

        assert account.available == Decimal("100")

    def test_snapshot_is_independent(self):
        account = Account(client=1, total=Decimal("5"))
        snapshot = account.snapshot()

        account.total += Decimal("1")

        assert snapshot.total == Decimal("5")

    def test_response_formatting(self):
        account = Account(client=7, total=Decimal("3"), held=Decimal("1.5"), locked=True)

        response = AccountResponse.from_account(account)

        assert response.available == "1.5000"
        assert response.held == "1.5000"
        assert response.total == "3.0000"
        assert response.locked is True


class TestFormatAmount:
    def test_trailing_zeros_preserved(self):
        assert format_amount(Decimal("3")) == "3.0000"

    def test_no_exponent_notation(self):
        assert format_amount(Decimal("1E+3")) == "1000.0000"

    def test_negative(self):
        assert format_amount(Decimal("-0.5")) == "-0.5000"


class TestSettings:
    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("INDEX_BACKEND", raising=False)
        monkeypatch.delenv("LOG_FORMAT", raising=False)

        settings = Settings(_env_file=None)

        assert settings.index_backend == "memory"
        assert settings.log_format == "json"

    def test_environment_override(self, monkeypatch):
        monkeypatch.setenv("INDEX_BACKEND", "rescan")
        monkeypatch.setenv("LOG_LEVEL", "DEBUG")

        settings = Settings(_env_file=None)

        assert settings.index_backend == "rescan"
        assert settings.log_level == "DEBUG"

    def test_settings_for_environment(self):
        assert get_settings_for_environment("testing").log_level == "WARNING"
        assert get_settings_for_environment("development").log_format == "text"
        assert get_settings_for_environment("production").allowed_origins == []
        assert type(get_settings_for_environment("unknown")) is Settings

    def test_get_settings_follows_app_env(self, monkeypatch):
        monkeypatch.setenv("APP_ENV", "testing")
        get_settings.cache_clear()
        try:
            settings = get_settings()
        finally:
            get_settings.cache_clear()

        assert isinstance(settings, TestingSettings)
        assert settings.app_env == "testing"
        assert settings.rate_limit_per_minute == 1000

    def test_get_settings_without_app_env(self, monkeypatch):
        monkeypatch.delenv("APP_ENV", raising=False)
        get_settings.cache_clear()
        try:
            settings = get_settings()
        finally:
            get_settings.cache_clear()

        assert type(settings) is Settings

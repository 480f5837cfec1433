"""Tests for FinancialAccount model and balance polarity."""

from decimal import Decimal

import pytest

from xpend_api.models.financial_account import (
    ACCOUNT_TYPES,
    CREDIT_ACCOUNT_TYPES,
    FinancialAccount,
    signed_delta,
)


class TestSignedDelta:
    """Tests for signed_delta()."""

    def test_asset_account_credit_increases_balance(self) -> None:
        assert signed_delta("savings", "credit", Decimal("100")) == Decimal("100")

    def test_asset_account_debit_decreases_balance(self) -> None:
        assert signed_delta("bank", "debit", Decimal("100")) == Decimal("-100")

    @pytest.mark.parametrize("account_type", sorted(CREDIT_ACCOUNT_TYPES))
    def test_credit_type_debit_increases_debt(self, account_type: str) -> None:
        assert signed_delta(account_type, "debit", Decimal("250")) == Decimal("250")

    @pytest.mark.parametrize("account_type", sorted(CREDIT_ACCOUNT_TYPES))
    def test_credit_type_credit_decreases_debt(self, account_type: str) -> None:
        assert signed_delta(account_type, "credit", Decimal("250")) == Decimal("-250")

    def test_unknown_direction_raises(self) -> None:
        with pytest.raises(ValueError):
            signed_delta("bank", "sideways", Decimal("1"))


def test_is_credit_type() -> None:
    """Test credit-type detection."""
    assert FinancialAccount(account_type="credit_card").is_credit_type is True
    assert FinancialAccount(account_type="wallet").is_credit_type is False


def test_account_types_cover_credit_types() -> None:
    """Test every credit type is a known account type."""
    assert CREDIT_ACCOUNT_TYPES <= ACCOUNT_TYPES
    assert "cash" in ACCOUNT_TYPES


def test_financial_account_table_name() -> None:
    """Test FinancialAccount table configuration."""
    assert FinancialAccount.__tablename__ == "financial_accounts"
    assert FinancialAccount.__table__.schema == "finance"

"""Tests for FinancialAccountRepository."""

from decimal import Decimal

import pytest
from sqlalchemy.orm import Session

from xpend_api.repositories.financial_account_repository import (
    FinancialAccountNotFoundError,
    FinancialAccountRepository,
)


class TestFinancialAccountRepository:
    """Tests for FinancialAccountRepository."""

    def test_create_with_fingerprints(self, db_session: Session) -> None:
        """Test creating an account with deduplicated fingerprints."""
        repo = FinancialAccountRepository(db_session)

        account = repo.create(
            user_id="user-1",
            account_type="savings",
            display_name="SBI Savings",
            opening_balance=Decimal("10000"),
            fingerprints=["sbi bank|1234", "sbi bank|1234", "state bank|1234"],
        )

        assert account.current_balance == Decimal("10000")
        assert sorted(fp.fingerprint for fp in account.fingerprints) == [
            "sbi bank|1234",
            "state bank|1234",
        ]

    def test_get_nonexistent(self, db_session: Session) -> None:
        with pytest.raises(FinancialAccountNotFoundError):
            FinancialAccountRepository(db_session).get(9999)

    def test_get_for_update_refreshes_balance(self, db_session: Session) -> None:
        """Test the locked read returns the stored balance."""
        repo = FinancialAccountRepository(db_session)
        account = repo.create(user_id="user-1", account_type="bank", display_name="Main")
        db_session.commit()

        locked = repo.get_for_update(account.id)

        assert locked.id == account.id
        assert locked.current_balance == Decimal("0")

    def test_find_by_fingerprint_scoped_to_user_and_active(self, db_session: Session) -> None:
        """Test matching ignores other users and inactive accounts."""
        repo = FinancialAccountRepository(db_session)
        mine = repo.create(
            user_id="user-1", account_type="bank", display_name="A", fingerprints=["sbi bank|1234"]
        )
        repo.create(
            user_id="user-2", account_type="bank", display_name="B", fingerprints=["sbi bank|1234"]
        )
        closed = repo.create(
            user_id="user-1", account_type="bank", display_name="C", fingerprints=["sbi bank|1234"]
        )
        repo.deactivate(closed.id)
        db_session.flush()

        matches = repo.find_by_fingerprint("user-1", "sbi bank|1234")

        assert [a.id for a in matches] == [mine.id]

    def test_add_fingerprint_is_idempotent(self, db_session: Session) -> None:
        repo = FinancialAccountRepository(db_session)
        account = repo.create(
            user_id="user-1", account_type="bank", display_name="A", fingerprints=["sbi bank|1234"]
        )

        repo.add_fingerprint(account.id, "sbi bank|1234")
        repo.add_fingerprint(account.id, "sbi|1234")

        assert len(account.fingerprints) == 2

    def test_exists_active(self, db_session: Session) -> None:
        repo = FinancialAccountRepository(db_session)
        account = repo.create(user_id="user-1", account_type="bank", display_name="A")

        assert repo.exists_active(account.id) is True
        repo.deactivate(account.id)
        assert repo.exists_active(account.id) is False
        assert repo.exists_active(9999) is False

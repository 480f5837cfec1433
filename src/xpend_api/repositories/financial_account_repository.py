"""FinancialAccountRepository for user accounts and their fingerprints."""

from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from xpend_api.models.financial_account import (
    FinancialAccount,
    FinancialAccountFingerprint,
)


class FinancialAccountNotFoundError(Exception):
    """Raised when a financial account is not found."""

    pass


class FinancialAccountRepository:
    """Repository for financial account CRUD and fingerprint lookups.

    Balances are not updated here; the reconciliation ledger owns balance
    mutation.
    """

    def __init__(self, session: Session) -> None:
        """Initialize the repository with a database session.

        Args:
            session: SQLAlchemy database session.
        """
        self._session = session

    def create(
        self,
        user_id: str,
        account_type: str,
        display_name: str,
        opening_balance: Decimal = Decimal("0"),
        institution: str | None = None,
        account_number_partial: str | None = None,
        currency: str = "INR",
        fingerprints: list[str] | None = None,
    ) -> FinancialAccount:
        """Create a financial account.

        Args:
            user_id: Owning user ID.
            account_type: bank, savings, credit_card, loan, ...
            display_name: Name shown to the user.
            opening_balance: Initial balance (debt for credit-type accounts).
            institution: Bank or card issuer name.
            account_number_partial: Last four digits.
            currency: ISO currency code.
            fingerprints: Normalized fingerprint keys used for matching.

        Returns:
            The created FinancialAccount.
        """
        account = FinancialAccount(
            user_id=user_id,
            account_type=account_type,
            display_name=display_name,
            institution=institution,
            account_number_partial=account_number_partial,
            current_balance=opening_balance,
            currency=currency,
            is_active=True,
        )
        for fingerprint in dict.fromkeys(fingerprints or []):
            account.fingerprints.append(FinancialAccountFingerprint(fingerprint=fingerprint))
        self._session.add(account)
        self._session.flush()
        return account

    def get(self, account_id: int) -> FinancialAccount:
        """Get a financial account by ID.

        Raises:
            FinancialAccountNotFoundError: If account doesn't exist.
        """
        account = self._session.get(FinancialAccount, account_id)
        if account is None:
            raise FinancialAccountNotFoundError(f"Financial account {account_id} not found")
        return account

    def get_for_update(self, account_id: int) -> FinancialAccount:
        """Load an account with a row lock, refreshing any cached state.

        Raises:
            FinancialAccountNotFoundError: If account doesn't exist.
        """
        stmt = (
            select(FinancialAccount)
            .where(FinancialAccount.id == account_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        account = self._session.execute(stmt).scalar_one_or_none()
        if account is None:
            raise FinancialAccountNotFoundError(f"Financial account {account_id} not found")
        return account

    def get_for_user(self, user_id: str, active_only: bool = True) -> list[FinancialAccount]:
        """Get a user's accounts ordered by ID."""
        stmt = select(FinancialAccount).where(FinancialAccount.user_id == user_id)
        if active_only:
            stmt = stmt.where(FinancialAccount.is_active == True)  # noqa: E712
        stmt = stmt.order_by(FinancialAccount.id)
        return list(self._session.execute(stmt).scalars().all())

    def find_by_fingerprint(self, user_id: str, fingerprint: str) -> list[FinancialAccount]:
        """Find a user's active accounts carrying a normalized fingerprint.

        Returns:
            Distinct matching accounts; more than one signals ambiguity.
        """
        stmt = (
            select(FinancialAccount)
            .join(FinancialAccountFingerprint)
            .where(
                FinancialAccount.user_id == user_id,
                FinancialAccount.is_active == True,  # noqa: E712
                FinancialAccountFingerprint.fingerprint == fingerprint,
            )
            .order_by(FinancialAccount.id)
        )
        return list(self._session.execute(stmt).scalars().unique().all())

    def add_fingerprint(self, account_id: int, fingerprint: str) -> FinancialAccount:
        """Attach an extra fingerprint to an account (no-op if present)."""
        account = self.get(account_id)
        if fingerprint not in {fp.fingerprint for fp in account.fingerprints}:
            account.fingerprints.append(FinancialAccountFingerprint(fingerprint=fingerprint))
            self._session.flush()
        return account

    def exists_active(self, account_id: int) -> bool:
        """Check whether an account exists and is active."""
        account = self._session.get(FinancialAccount, account_id)
        return account is not None and account.is_active

    def deactivate(self, account_id: int) -> FinancialAccount:
        """Deactivate an account; it no longer matches fingerprints."""
        account = self.get(account_id)
        account.is_active = False
        return account

"""LedgerTransactionRepository for the balance audit log."""

from datetime import datetime
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from xpend_api.models.ledger_transaction import LedgerTransaction


class LedgerTransactionNotFoundError(Exception):
    """Raised when a ledger transaction is not found."""

    pass


class LedgerTransactionRepository:
    """Repository for ledger audit rows. Rows are never deleted."""

    def __init__(self, session: Session) -> None:
        """Initialize the repository with a database session.

        Args:
            session: SQLAlchemy database session.
        """
        self._session = session

    def create(
        self,
        financial_account_id: int,
        parsed_transaction_id: int | None,
        direction: str,
        amount: Decimal,
        signed_delta: Decimal,
        balance_after: Decimal,
        kind: str = "apply",
        supersedes_id: int | None = None,
        warning: str | None = None,
    ) -> LedgerTransaction:
        """Record an active ledger row.

        Returns:
            The created LedgerTransaction.
        """
        entry = LedgerTransaction(
            financial_account_id=financial_account_id,
            parsed_transaction_id=parsed_transaction_id,
            direction=direction,
            amount=amount,
            signed_delta=signed_delta,
            balance_after=balance_after,
            kind=kind,
            supersedes_id=supersedes_id,
            is_active=True,
            warning=warning,
        )
        self._session.add(entry)
        self._session.flush()
        return entry

    def get(self, ledger_id: int) -> LedgerTransaction:
        """Get a ledger row by ID.

        Raises:
            LedgerTransactionNotFoundError: If it doesn't exist.
        """
        entry = self._session.get(LedgerTransaction, ledger_id)
        if entry is None:
            raise LedgerTransactionNotFoundError(f"Ledger transaction {ledger_id} not found")
        return entry

    def get_active_for_parsed(self, parsed_transaction_id: int) -> LedgerTransaction | None:
        """Get the effective ledger row of a parsed transaction, if any."""
        stmt = select(LedgerTransaction).where(
            LedgerTransaction.parsed_transaction_id == parsed_transaction_id,
            LedgerTransaction.is_active == True,  # noqa: E712
        )
        return self._session.execute(stmt).scalar_one_or_none()

    def get_for_account(
        self, financial_account_id: int, active_only: bool = False
    ) -> list[LedgerTransaction]:
        """Get an account's ledger history in creation order."""
        stmt = select(LedgerTransaction).where(
            LedgerTransaction.financial_account_id == financial_account_id
        )
        if active_only:
            stmt = stmt.where(LedgerTransaction.is_active == True)  # noqa: E712
        stmt = stmt.order_by(LedgerTransaction.id)
        return list(self._session.execute(stmt).scalars().all())

    def deactivate(self, ledger_id: int, reversed_at: datetime | None = None) -> LedgerTransaction:
        """Mark a row as no longer effective.

        Args:
            ledger_id: The ledger row ID.
            reversed_at: Set when the effect was undone rather than superseded.
        """
        entry = self.get(ledger_id)
        entry.is_active = False
        entry.reversed_at = reversed_at
        return entry

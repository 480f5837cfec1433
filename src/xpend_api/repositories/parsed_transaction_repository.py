"""ParsedTransactionRepository for transaction-bearing emails."""

from datetime import datetime
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from xpend_api.models.mail_integration import MailIntegration
from xpend_api.models.parsed_transaction import ParsedTransaction


class ParsedTransactionNotFoundError(Exception):
    """Raised when a parsed transaction is not found."""

    pass


class ParsedTransactionRepository:
    """Repository for parsed transaction persistence and queries."""

    def __init__(self, session: Session) -> None:
        """Initialize the repository with a database session.

        Args:
            session: SQLAlchemy database session.
        """
        self._session = session

    def create(
        self,
        mail_integration_id: int,
        source_message_id: str,
        amount: Decimal,
        direction: str,
        account_fingerprint: str,
        normalized_fingerprint: str,
        occurred_at: datetime,
        received_at: datetime,
        description: str,
        confidence_score: Decimal,
        subject: str | None = None,
        sender: str | None = None,
        currency: str = "INR",
        reported_balance: Decimal | None = None,
        rule_name: str | None = None,
        account_type: str | None = None,
    ) -> ParsedTransaction:
        """Create a new pending parsed transaction.

        Callers are expected to check ``exists()`` first; the unique
        constraint on (integration, message id) rejects duplicates.

        Returns:
            The created ParsedTransaction.
        """
        parsed = ParsedTransaction(
            mail_integration_id=mail_integration_id,
            source_message_id=source_message_id,
            subject=subject,
            sender=sender,
            received_at=received_at,
            amount=amount,
            currency=currency,
            direction=direction,
            account_fingerprint=account_fingerprint,
            normalized_fingerprint=normalized_fingerprint,
            occurred_at=occurred_at,
            description=description,
            reported_balance=reported_balance,
            rule_name=rule_name,
            account_type=account_type,
            confidence_score=confidence_score,
            status="pending",
        )
        self._session.add(parsed)
        self._session.flush()
        return parsed

    def get(self, parsed_id: int) -> ParsedTransaction:
        """Get a parsed transaction by ID.

        Raises:
            ParsedTransactionNotFoundError: If it doesn't exist.
        """
        parsed = self._session.get(ParsedTransaction, parsed_id)
        if parsed is None:
            raise ParsedTransactionNotFoundError(
                f"Parsed transaction {parsed_id} not found"
            )
        return parsed

    def exists(self, mail_integration_id: int, source_message_id: str) -> bool:
        """Check the (integration, message id) dedup key."""
        stmt = select(ParsedTransaction.id).where(
            ParsedTransaction.mail_integration_id == mail_integration_id,
            ParsedTransaction.source_message_id == source_message_id,
        )
        return self._session.execute(stmt).first() is not None

    def get_by_integration(
        self, mail_integration_id: int, status: str | None = None
    ) -> list[ParsedTransaction]:
        """Get an integration's rows in processing order (oldest first).

        Args:
            mail_integration_id: The integration ID.
            status: Optional status filter.
        """
        stmt = select(ParsedTransaction).where(
            ParsedTransaction.mail_integration_id == mail_integration_id
        )
        if status is not None:
            stmt = stmt.where(ParsedTransaction.status == status)
        stmt = stmt.order_by(
            ParsedTransaction.occurred_at, ParsedTransaction.source_message_id
        )
        return list(self._session.execute(stmt).scalars().all())

    def get_pending(self, mail_integration_id: int) -> list[ParsedTransaction]:
        """Get pending rows in ascending occurred-at order."""
        return self.get_by_integration(mail_integration_id, status="pending")

    def get_pending_by_fingerprint(
        self, mail_integration_id: int, normalized_fingerprint: str
    ) -> list[ParsedTransaction]:
        """Get pending rows for one normalized fingerprint, oldest first."""
        stmt = (
            select(ParsedTransaction)
            .where(
                ParsedTransaction.mail_integration_id == mail_integration_id,
                ParsedTransaction.normalized_fingerprint == normalized_fingerprint,
                ParsedTransaction.status == "pending",
            )
            .order_by(
                ParsedTransaction.occurred_at, ParsedTransaction.source_message_id
            )
        )
        return list(self._session.execute(stmt).scalars().all())

    def get_for_user(
        self, user_id: str, status: str | None = None
    ) -> list[ParsedTransaction]:
        """Get parsed rows across all of a user's integrations, newest first."""
        stmt = (
            select(ParsedTransaction)
            .join(MailIntegration)
            .where(MailIntegration.user_id == user_id)
        )
        if status is not None:
            stmt = stmt.where(ParsedTransaction.status == status)
        stmt = stmt.order_by(ParsedTransaction.occurred_at.desc())
        return list(self._session.execute(stmt).scalars().all())

    def mark_processed(
        self, parsed_id: int, ledger_transaction_id: int, processed_at: datetime
    ) -> ParsedTransaction:
        """Link a row to its ledger transaction and mark it processed."""
        parsed = self.get(parsed_id)
        parsed.status = "processed"
        parsed.ledger_transaction_id = ledger_transaction_id
        parsed.processed_at = processed_at
        return parsed

    def mark_rejected(self, parsed_id: int, processed_at: datetime) -> ParsedTransaction:
        """Mark a row rejected (no ledger effect)."""
        parsed = self.get(parsed_id)
        parsed.status = "rejected"
        parsed.ledger_transaction_id = None
        parsed.processed_at = processed_at
        return parsed

    def reset_to_pending(self, parsed_id: int) -> ParsedTransaction:
        """Clear processing state so the row can be re-evaluated."""
        parsed = self.get(parsed_id)
        parsed.status = "pending"
        parsed.ledger_transaction_id = None
        parsed.processed_at = None
        return parsed

    def count_by_status(self, mail_integration_id: int) -> dict[str, int]:
        """Get count of an integration's rows grouped by status."""
        counts: dict[str, int] = {"pending": 0, "processed": 0, "rejected": 0}
        for parsed in self.get_by_integration(mail_integration_id):
            if parsed.status in counts:
                counts[parsed.status] += 1
        return counts

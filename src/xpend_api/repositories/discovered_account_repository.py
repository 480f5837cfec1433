"""DiscoveredAccountRepository for staged account candidates."""

from datetime import datetime
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from xpend_api.models.discovered_account import DiscoveredAccount
from xpend_api.models.mail_integration import MailIntegration


class DiscoveredAccountNotFoundError(Exception):
    """Raised when a discovered account is not found."""

    pass


class DiscoveredAccountRepository:
    """Repository for discovered account CRUD operations."""

    def __init__(self, session: Session) -> None:
        """Initialize the repository with a database session.

        Args:
            session: SQLAlchemy database session.
        """
        self._session = session

    def create(
        self,
        mail_integration_id: int,
        institution: str,
        normalized_fingerprint: str,
        confidence_score: Decimal,
        account_type: str = "bank",
        account_number_partial: str | None = None,
        reported_balance: Decimal | None = None,
        balance_as_of: datetime | None = None,
        source_message_id: str | None = None,
    ) -> DiscoveredAccount:
        """Stage a newly discovered account with one sighting.

        Returns:
            The created DiscoveredAccount.
        """
        discovered = DiscoveredAccount(
            mail_integration_id=mail_integration_id,
            institution=institution,
            account_type=account_type,
            account_number_partial=account_number_partial,
            normalized_fingerprint=normalized_fingerprint,
            reported_balance=reported_balance,
            balance_as_of=balance_as_of,
            confidence_score=confidence_score,
            sighting_count=1,
            source_message_id=source_message_id,
            status="pending",
        )
        self._session.add(discovered)
        self._session.flush()
        return discovered

    def get(self, discovered_id: int) -> DiscoveredAccount:
        """Get a discovered account by ID.

        Raises:
            DiscoveredAccountNotFoundError: If it doesn't exist.
        """
        discovered = self._session.get(DiscoveredAccount, discovered_id)
        if discovered is None:
            raise DiscoveredAccountNotFoundError(
                f"Discovered account {discovered_id} not found"
            )
        return discovered

    def get_by_fingerprint(
        self, mail_integration_id: int, normalized_fingerprint: str
    ) -> DiscoveredAccount | None:
        """Find the discovery row for an (integration, fingerprint) key."""
        stmt = select(DiscoveredAccount).where(
            DiscoveredAccount.mail_integration_id == mail_integration_id,
            DiscoveredAccount.normalized_fingerprint == normalized_fingerprint,
        )
        return self._session.execute(stmt).scalar_one_or_none()

    def get_by_integration(
        self, mail_integration_id: int, status: str | None = None
    ) -> list[DiscoveredAccount]:
        """Get an integration's discoveries, optionally filtered by status."""
        stmt = select(DiscoveredAccount).where(
            DiscoveredAccount.mail_integration_id == mail_integration_id
        )
        if status is not None:
            stmt = stmt.where(DiscoveredAccount.status == status)
        stmt = stmt.order_by(DiscoveredAccount.id)
        return list(self._session.execute(stmt).scalars().all())

    def get_for_user(
        self, user_id: str, status: str | None = None
    ) -> list[DiscoveredAccount]:
        """Get a user's discoveries ordered by confidence (highest first)."""
        stmt = (
            select(DiscoveredAccount)
            .join(MailIntegration)
            .where(MailIntegration.user_id == user_id)
        )
        if status is not None:
            stmt = stmt.where(DiscoveredAccount.status == status)
        stmt = stmt.order_by(
            DiscoveredAccount.confidence_score.desc(), DiscoveredAccount.id
        )
        return list(self._session.execute(stmt).scalars().all())

    def record_sighting(
        self,
        discovered_id: int,
        confidence_score: Decimal,
        reported_balance: Decimal | None = None,
        balance_as_of: datetime | None = None,
    ) -> DiscoveredAccount:
        """Count a repeat sighting of an already staged fingerprint.

        Confidence keeps the highest value seen; the reported balance is
        refreshed when the sighting is newer than the stored snapshot.
        """
        discovered = self.get(discovered_id)
        discovered.sighting_count += 1
        if confidence_score > discovered.confidence_score:
            discovered.confidence_score = confidence_score
        if reported_balance is not None and (
            discovered.balance_as_of is None
            or balance_as_of is None
            or balance_as_of >= discovered.balance_as_of
        ):
            discovered.reported_balance = reported_balance
            discovered.balance_as_of = balance_as_of
        return discovered

    def update_status(
        self,
        discovered_id: int,
        status: str,
        financial_account_id: int | None = None,
        processed_at: datetime | None = None,
    ) -> DiscoveredAccount:
        """Update a discovery's review status.

        Args:
            discovered_id: The discovered account ID.
            status: New status (pending/approved/rejected).
            financial_account_id: Materialized account ID (approve only).
            processed_at: Review timestamp; cleared when back to pending.
        """
        discovered = self.get(discovered_id)
        discovered.status = status
        discovered.financial_account_id = financial_account_id
        discovered.processed_at = None if status == "pending" else processed_at
        return discovered

    def delete(self, discovered_id: int) -> None:
        """Delete a discovered account.

        Raises:
            DiscoveredAccountNotFoundError: If it doesn't exist.
        """
        discovered = self.get(discovered_id)
        self._session.delete(discovered)

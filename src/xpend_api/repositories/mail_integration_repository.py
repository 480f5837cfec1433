"""MailIntegrationRepository for managing connected mailboxes."""

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from xpend_api.models.mail_integration import MailIntegration


class MailIntegrationNotFoundError(Exception):
    """Raised when a mail integration is not found."""

    pass


class MailIntegrationRepository:
    """Repository for mail integration CRUD operations."""

    def __init__(self, session: Session) -> None:
        """Initialize the repository with a database session.

        Args:
            session: SQLAlchemy database session.
        """
        self._session = session

    def create(
        self,
        user_id: str,
        provider: str,
        email_address: str,
        encrypted_access_token: str,
        encrypted_refresh_token: str | None = None,
        token_expires_at: datetime | None = None,
    ) -> MailIntegration:
        """Create a new mail integration.

        Args:
            user_id: Owning user ID.
            provider: Provider key (gmail, outlook, yahoo).
            email_address: Mailbox address.
            encrypted_access_token: Encrypted OAuth access token.
            encrypted_refresh_token: Encrypted OAuth refresh token.
            token_expires_at: Access token expiry (UTC).

        Returns:
            The created MailIntegration.
        """
        integration = MailIntegration(
            user_id=user_id,
            provider=provider,
            email_address=email_address,
            encrypted_access_token=encrypted_access_token,
            encrypted_refresh_token=encrypted_refresh_token,
            token_expires_at=token_expires_at,
            last_synced_at=None,
            is_active=True,
            status="connected",
            transactions_ingested=0,
            accounts_discovered=0,
        )
        self._session.add(integration)
        self._session.flush()
        return integration

    def get(self, integration_id: int) -> MailIntegration:
        """Get a mail integration by ID.

        Args:
            integration_id: The integration ID.

        Returns:
            The MailIntegration.

        Raises:
            MailIntegrationNotFoundError: If integration doesn't exist.
        """
        integration = self._session.get(MailIntegration, integration_id)
        if integration is None:
            raise MailIntegrationNotFoundError(
                f"Mail integration {integration_id} not found"
            )
        return integration

    def find(
        self, user_id: str, provider: str, email_address: str
    ) -> MailIntegration | None:
        """Find an integration by its natural key.

        Returns:
            The MailIntegration if found, None otherwise.
        """
        stmt = select(MailIntegration).where(
            MailIntegration.user_id == user_id,
            MailIntegration.provider == provider,
            MailIntegration.email_address == email_address,
        )
        return self._session.execute(stmt).scalar_one_or_none()

    def get_for_user(self, user_id: str) -> list[MailIntegration]:
        """Get all integrations belonging to a user, oldest first."""
        stmt = (
            select(MailIntegration)
            .where(MailIntegration.user_id == user_id)
            .order_by(MailIntegration.id)
        )
        return list(self._session.execute(stmt).scalars().all())

    def get_active_for_user(self, user_id: str) -> list[MailIntegration]:
        """Get active integrations belonging to a user, oldest first."""
        stmt = (
            select(MailIntegration)
            .where(
                MailIntegration.user_id == user_id,
                MailIntegration.is_active == True,  # noqa: E712
            )
            .order_by(MailIntegration.id)
        )
        return list(self._session.execute(stmt).scalars().all())

    def update_tokens(
        self,
        integration_id: int,
        encrypted_access_token: str,
        token_expires_at: datetime | None,
        encrypted_refresh_token: str | None = None,
    ) -> MailIntegration:
        """Store refreshed OAuth tokens and mark the integration connected.

        The refresh token is only replaced when a new one is supplied.

        Raises:
            MailIntegrationNotFoundError: If integration doesn't exist.
        """
        integration = self.get(integration_id)
        integration.encrypted_access_token = encrypted_access_token
        integration.token_expires_at = token_expires_at
        if encrypted_refresh_token is not None:
            integration.encrypted_refresh_token = encrypted_refresh_token
        integration.is_active = True
        integration.status = "connected"
        return integration

    def set_watermark(
        self, integration_id: int, watermark: datetime | None
    ) -> MailIntegration:
        """Set (or clear) the last-synced watermark.

        Raises:
            MailIntegrationNotFoundError: If integration doesn't exist.
        """
        integration = self.get(integration_id)
        integration.last_synced_at = watermark
        return integration

    def record_sync_stats(
        self, integration_id: int, transactions: int, accounts: int
    ) -> MailIntegration:
        """Add to the integration's ingestion counters."""
        integration = self.get(integration_id)
        integration.transactions_ingested += transactions
        integration.accounts_discovered += accounts
        return integration

    def mark_reconnect_required(self, integration_id: int) -> MailIntegration:
        """Deactivate an integration whose credentials can no longer be refreshed."""
        integration = self.get(integration_id)
        integration.is_active = False
        integration.status = "reconnect_required"
        return integration

    def deactivate(self, integration_id: int) -> MailIntegration:
        """Disconnect an integration without deleting its data."""
        integration = self.get(integration_id)
        integration.is_active = False
        integration.status = "disconnected"
        return integration

    def delete(self, integration_id: int) -> None:
        """Delete an integration together with its parsed data.

        Raises:
            MailIntegrationNotFoundError: If integration doesn't exist.
        """
        integration = self.get(integration_id)
        self._session.delete(integration)

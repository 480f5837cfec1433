"""ConnectionService: connecting and disconnecting mailboxes."""

import logging

from sqlalchemy.orm import Session

from xpend_api.models.mail_integration import MailIntegration
from xpend_api.repositories.mail_integration_repository import (
    MailIntegrationRepository,
)
from xpend_api.services.mail_gateway import (
    MailGatewayInterface,
    TokenCipher,
    TokenEncryptionError,
    get_gateway,
)

logger = logging.getLogger(__name__)


class ConnectionService:
    """OAuth connection lifecycle of mail integrations."""

    def __init__(
        self,
        session: Session,
        gateways: dict[str, MailGatewayInterface],
        cipher: TokenCipher | None = None,
    ) -> None:
        """Initialize the service.

        Args:
            session: SQLAlchemy database session; committed by this service.
            gateways: Provider to gateway registry.
            cipher: Token cipher for tokens at rest (required to connect).
        """
        self._session = session
        self._gateways = gateways
        self._cipher = cipher
        self._integrations = MailIntegrationRepository(session)

    def start_connection(self, provider: str, state: str | None = None) -> str:
        """Get the consent URL for a provider.

        Raises:
            UnsupportedProviderError: If the provider has no gateway.
        """
        return get_gateway(self._gateways, provider).generate_auth_url(state)

    def complete_connection(self, user_id: str, provider: str, code: str) -> MailIntegration:
        """Exchange an authorization code and store the integration.

        An existing integration for the same mailbox is reactivated with the
        fresh tokens instead of creating a duplicate.

        Args:
            user_id: Owning user ID.
            provider: Provider key.
            code: Authorization code from the OAuth callback.

        Returns:
            The connected MailIntegration.

        Raises:
            UnsupportedProviderError: If the provider has no gateway.
            TokenEncryptionError: If no token cipher is configured.
            MailGatewayError: If the exchange or user info lookup fails.
        """
        if self._cipher is None:
            raise TokenEncryptionError("Token encryption key is not configured")
        gateway = get_gateway(self._gateways, provider)
        tokens = gateway.exchange_code_for_tokens(code)
        user_info = gateway.get_user_info(tokens.access_token)

        encrypted_access = self._cipher.encrypt(tokens.access_token)
        encrypted_refresh = (
            self._cipher.encrypt(tokens.refresh_token) if tokens.refresh_token else None
        )

        integration = self._integrations.find(user_id, provider, user_info.email_address)
        if integration is None:
            integration = self._integrations.create(
                user_id=user_id,
                provider=provider,
                email_address=user_info.email_address,
                encrypted_access_token=encrypted_access,
                encrypted_refresh_token=encrypted_refresh,
                token_expires_at=tokens.expires_at,
            )
            logger.info("Connected %s mailbox for user %s", provider, user_id)
        else:
            self._integrations.update_tokens(
                integration.id,
                encrypted_access_token=encrypted_access,
                token_expires_at=tokens.expires_at,
                encrypted_refresh_token=encrypted_refresh,
            )
            logger.info("Reconnected %s integration %d", provider, integration.id)

        self._session.commit()
        return integration

    def disconnect(self, integration_id: int, delete: bool = False) -> MailIntegration | None:
        """Disconnect an integration.

        Args:
            integration_id: The integration ID.
            delete: Remove the integration with its parsed rows and
                discoveries instead of only deactivating it.

        Returns:
            The deactivated integration, or None when deleted.

        Raises:
            MailIntegrationNotFoundError: If the integration doesn't exist.
        """
        if delete:
            self._integrations.delete(integration_id)
            self._session.commit()
            logger.info("Deleted mail integration %d", integration_id)
            return None

        integration = self._integrations.deactivate(integration_id)
        self._session.commit()
        logger.info("Disconnected mail integration %d", integration_id)
        return integration

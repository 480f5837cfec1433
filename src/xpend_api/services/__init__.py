"""Business logic services."""

from xpend_api.services.account_resolver import (
    AccountResolver,
    AmbiguousAccountError,
    DiscoveredAccountStateError,
    NormalizedFingerprint,
    Resolution,
    normalize_fingerprint,
)
from xpend_api.services.connection_service import ConnectionService
from xpend_api.services.mail_gateway import (
    CredentialsExpiredError,
    GmailGateway,
    MailGatewayError,
    MailGatewayInterface,
    MailMessage,
    MailUserInfo,
    MessageBatch,
    OAuthTokens,
    TokenCipher,
    TokenEncryptionError,
    TransientMailError,
    UnsupportedProviderError,
    build_gateways,
)
from xpend_api.services.message_parser import (
    DEFAULT_PARSING_RULES,
    DatePattern,
    MessageParser,
    ParseBatchResult,
    ParsedCandidate,
    ParsingRule,
    build_message_parser,
    load_parsing_rules,
)
from xpend_api.services.reconciliation_ledger import (
    ApplyResult,
    LedgerInvariantError,
    ReconciliationLedger,
)
from xpend_api.services.sync_orchestrator import (
    ApprovalResult,
    IntegrationError,
    IntegrationSummary,
    SyncOrchestrator,
    SyncResult,
)

__all__ = [
    # Account Resolver
    "AccountResolver",
    "AmbiguousAccountError",
    "DiscoveredAccountStateError",
    "NormalizedFingerprint",
    "Resolution",
    "normalize_fingerprint",
    # Connection
    "ConnectionService",
    # Mail Gateway
    "CredentialsExpiredError",
    "GmailGateway",
    "MailGatewayError",
    "MailGatewayInterface",
    "MailMessage",
    "MailUserInfo",
    "MessageBatch",
    "OAuthTokens",
    "TokenCipher",
    "TokenEncryptionError",
    "TransientMailError",
    "UnsupportedProviderError",
    "build_gateways",
    # Message Parser
    "DEFAULT_PARSING_RULES",
    "DatePattern",
    "MessageParser",
    "ParseBatchResult",
    "ParsedCandidate",
    "ParsingRule",
    "build_message_parser",
    "load_parsing_rules",
    # Reconciliation Ledger
    "ApplyResult",
    "LedgerInvariantError",
    "ReconciliationLedger",
    # Sync Orchestrator
    "ApprovalResult",
    "IntegrationError",
    "IntegrationSummary",
    "SyncOrchestrator",
    "SyncResult",
]

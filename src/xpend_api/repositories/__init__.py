"""Repository layer for data access patterns."""

from xpend_api.repositories.discovered_account_repository import (
    DiscoveredAccountNotFoundError,
    DiscoveredAccountRepository,
)
from xpend_api.repositories.financial_account_repository import (
    FinancialAccountNotFoundError,
    FinancialAccountRepository,
)
from xpend_api.repositories.ledger_transaction_repository import (
    LedgerTransactionNotFoundError,
    LedgerTransactionRepository,
)
from xpend_api.repositories.mail_integration_repository import (
    MailIntegrationNotFoundError,
    MailIntegrationRepository,
)
from xpend_api.repositories.parsed_transaction_repository import (
    ParsedTransactionNotFoundError,
    ParsedTransactionRepository,
)

__all__ = [
    "DiscoveredAccountNotFoundError",
    "DiscoveredAccountRepository",
    "FinancialAccountNotFoundError",
    "FinancialAccountRepository",
    "LedgerTransactionNotFoundError",
    "LedgerTransactionRepository",
    "MailIntegrationNotFoundError",
    "MailIntegrationRepository",
    "ParsedTransactionNotFoundError",
    "ParsedTransactionRepository",
]

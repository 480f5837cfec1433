"""SQLAlchemy models for the Xpend ingestion engine."""

from xpend_api.models.discovered_account import DiscoveredAccount
from xpend_api.models.financial_account import (
    ACCOUNT_TYPES,
    CREDIT_ACCOUNT_TYPES,
    DIRECTIONS,
    FinancialAccount,
    FinancialAccountFingerprint,
    signed_delta,
)
from xpend_api.models.ledger_transaction import LedgerTransaction
from xpend_api.models.mail_integration import MailIntegration
from xpend_api.models.parsed_transaction import ParsedTransaction

__all__ = [
    "ACCOUNT_TYPES",
    "CREDIT_ACCOUNT_TYPES",
    "DIRECTIONS",
    "DiscoveredAccount",
    "FinancialAccount",
    "FinancialAccountFingerprint",
    "LedgerTransaction",
    "MailIntegration",
    "ParsedTransaction",
    "signed_delta",
]

"""Pydantic schemas for the mail ingestion API."""

from datetime import datetime
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

Direction = Literal["credit", "debit"]
AccountType = Literal[
    "bank",
    "savings",
    "checking",
    "current",
    "wallet",
    "cash",
    "credit_card",
    "loan",
    "credit_line",
]


# --- Connection Schemas ---


class AuthUrlResponse(BaseModel):
    """Consent URL for connecting a mailbox."""

    provider: str
    auth_url: str


class ConnectCallbackRequest(BaseModel):
    """OAuth callback payload forwarded by the UI."""

    user_id: str = Field(..., min_length=1, max_length=64)
    code: str = Field(..., min_length=1, description="Authorization code")
    state: str | None = None


class MailIntegrationResponse(BaseModel):
    """A connected mailbox. Tokens are never returned."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: str
    provider: str
    email_address: str
    is_active: bool
    status: str
    last_synced_at: datetime | None = None
    token_expires_at: datetime | None = None
    transactions_ingested: int
    accounts_discovered: int
    created_at: datetime
    updated_at: datetime


class MailIntegrationListResponse(BaseModel):
    """Response with list of integrations."""

    integrations: list[MailIntegrationResponse]
    total: int


# --- Sync Schemas ---


class SyncRequest(BaseModel):
    """Request to sync or reprocess a user's mailboxes."""

    user_id: str = Field(..., min_length=1, max_length=64)


class IntegrationErrorResponse(BaseModel):
    """One per-integration failure."""

    integration_id: int | None = None
    email_address: str | None = None
    kind: str
    message: str


class IntegrationSummaryResponse(BaseModel):
    """Per-integration counters."""

    integration_id: int
    email_address: str
    status: str
    transactions_ingested: int
    transactions_applied: int
    accounts_discovered: int
    messages_skipped: int
    watermark: datetime | None = None


class SyncResultResponse(BaseModel):
    """Aggregate sync or reprocess result, including partial failures."""

    success: bool
    transactions_ingested: int
    transactions_applied: int
    accounts_discovered: int
    messages_skipped: int
    needs_review: int
    warnings: list[str]
    errors: list[IntegrationErrorResponse]
    integrations: list[IntegrationSummaryResponse]


# --- Discovered Account Schemas ---


class DiscoveredAccountResponse(BaseModel):
    """A staged account candidate."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    mail_integration_id: int
    institution: str
    display_name: str
    account_type: str
    account_number_partial: str | None = None
    normalized_fingerprint: str
    inferred_opening_balance: Decimal | None = None
    reported_balance: Decimal | None = None
    balance_as_of: datetime | None = None
    confidence_score: Decimal
    sighting_count: int
    status: str
    processed_at: datetime | None = None
    financial_account_id: int | None = None
    created_at: datetime


class DiscoveredAccountListResponse(BaseModel):
    """Response with list of discovered accounts."""

    discovered_accounts: list[DiscoveredAccountResponse]
    total: int


class ApproveDiscoveredAccountRequest(BaseModel):
    """Optional overrides when approving a discovery."""

    display_name: str | None = Field(None, max_length=200)
    account_type: AccountType | None = None


# --- Financial Account Schemas ---


class FinancialAccountCreate(BaseModel):
    """Request to create a financial account."""

    user_id: str = Field(..., min_length=1, max_length=64)
    account_type: AccountType
    display_name: str = Field(..., min_length=1, max_length=200)
    opening_balance: Decimal = Decimal("0")
    institution: str | None = Field(None, max_length=200)
    account_number_partial: str | None = Field(None, pattern=r"^\d{1,4}$")
    currency: str = Field("INR", min_length=3, max_length=3)
    fingerprints: list[str] = Field(
        default_factory=list,
        description="Raw fingerprints such as 'SBI Bank ****1234'",
    )


class FinancialAccountResponse(BaseModel):
    """A financial account with its normalized fingerprints."""

    id: int
    user_id: str
    account_type: str
    display_name: str
    institution: str | None = None
    account_number_partial: str | None = None
    current_balance: Decimal
    currency: str
    is_active: bool
    fingerprints: list[str]
    created_at: datetime


class FinancialAccountListResponse(BaseModel):
    """Response with list of financial accounts."""

    accounts: list[FinancialAccountResponse]
    total: int


class ApprovalResponse(BaseModel):
    """Result of approving a discovered account."""

    discovered_account: DiscoveredAccountResponse
    financial_account: FinancialAccountResponse
    transactions_applied: int
    needs_review: int
    warnings: list[str]


# --- Parsed Transaction Schemas ---


class ParsedTransactionResponse(BaseModel):
    """A parsed transaction and its processing state."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    mail_integration_id: int
    source_message_id: str
    subject: str | None = None
    sender: str | None = None
    received_at: datetime
    amount: Decimal
    currency: str
    direction: str
    account_fingerprint: str
    normalized_fingerprint: str
    occurred_at: datetime
    description: str
    reported_balance: Decimal | None = None
    rule_name: str | None = None
    account_type: str | None = None
    confidence_score: Decimal
    status: str
    processed_at: datetime | None = None
    ledger_transaction_id: int | None = None
    manually_applied: bool = False


class ParsedTransactionListResponse(BaseModel):
    """Response with list of parsed transactions."""

    parsed_transactions: list[ParsedTransactionResponse]
    total: int


class ParsedTransactionUpdate(BaseModel):
    """Amount or direction correction."""

    amount: Decimal | None = Field(None, gt=0)
    direction: Direction | None = None


class ApplyResultResponse(BaseModel):
    """Result of applying one parsed transaction."""

    parsed_transaction_id: int
    applied: bool
    already_applied: bool
    ledger_transaction_id: int | None = None
    account_id: int | None = None
    discovered_account_id: int | None = None
    warning: str | None = None

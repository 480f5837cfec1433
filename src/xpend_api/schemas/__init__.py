"""Pydantic schemas for API request/response validation."""

from xpend_api.schemas.ingestion import (
    ApplyResultResponse,
    ApprovalResponse,
    ApproveDiscoveredAccountRequest,
    AuthUrlResponse,
    ConnectCallbackRequest,
    DiscoveredAccountListResponse,
    DiscoveredAccountResponse,
    FinancialAccountCreate,
    FinancialAccountListResponse,
    FinancialAccountResponse,
    IntegrationErrorResponse,
    IntegrationSummaryResponse,
    MailIntegrationListResponse,
    MailIntegrationResponse,
    ParsedTransactionListResponse,
    ParsedTransactionResponse,
    ParsedTransactionUpdate,
    SyncRequest,
    SyncResultResponse,
)

__all__ = [
    "ApplyResultResponse",
    "ApprovalResponse",
    "ApproveDiscoveredAccountRequest",
    "AuthUrlResponse",
    "ConnectCallbackRequest",
    "DiscoveredAccountListResponse",
    "DiscoveredAccountResponse",
    "FinancialAccountCreate",
    "FinancialAccountListResponse",
    "FinancialAccountResponse",
    "IntegrationErrorResponse",
    "IntegrationSummaryResponse",
    "MailIntegrationListResponse",
    "MailIntegrationResponse",
    "ParsedTransactionListResponse",
    "ParsedTransactionResponse",
    "ParsedTransactionUpdate",
    "SyncRequest",
    "SyncResultResponse",
]

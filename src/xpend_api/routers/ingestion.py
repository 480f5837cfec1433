"""FastAPI router for mail connection, sync and review endpoints."""

import logging
from dataclasses import asdict
from functools import lru_cache
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from xpend_api.core.config import settings
from xpend_api.db.session import get_db
from xpend_api.models.financial_account import FinancialAccount
from xpend_api.repositories.discovered_account_repository import (
    DiscoveredAccountNotFoundError,
    DiscoveredAccountRepository,
)
from xpend_api.repositories.financial_account_repository import (
    FinancialAccountRepository,
)
from xpend_api.repositories.mail_integration_repository import (
    MailIntegrationNotFoundError,
    MailIntegrationRepository,
)
from xpend_api.repositories.parsed_transaction_repository import (
    ParsedTransactionNotFoundError,
    ParsedTransactionRepository,
)
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
    MailIntegrationListResponse,
    MailIntegrationResponse,
    ParsedTransactionListResponse,
    ParsedTransactionResponse,
    ParsedTransactionUpdate,
    SyncRequest,
    SyncResultResponse,
)
from xpend_api.services.account_resolver import (
    AmbiguousAccountError,
    DiscoveredAccountStateError,
    normalize_fingerprint,
)
from xpend_api.services.connection_service import ConnectionService
from xpend_api.services.mail_gateway import (
    MailGatewayError,
    MailGatewayInterface,
    TokenCipher,
    TokenEncryptionError,
    UnsupportedProviderError,
    build_gateways,
)
from xpend_api.services.message_parser import MessageParser, build_message_parser
from xpend_api.services.reconciliation_ledger import LedgerInvariantError
from xpend_api.services.sync_orchestrator import SyncOrchestrator, SyncResult

logger = logging.getLogger(__name__)

router = APIRouter()

DISCOVERY_STATUSES = ("pending", "approved", "rejected")
PARSED_STATUSES = ("pending", "processed", "rejected")


@lru_cache
def get_gateways() -> dict[str, MailGatewayInterface]:
    """Get the provider to gateway registry."""
    return build_gateways(settings)


@lru_cache
def get_parser() -> MessageParser:
    """Get the configured message parser."""
    return build_message_parser(settings)


def get_cipher() -> TokenCipher:
    """Get the token cipher; 503 when no valid key is configured."""
    try:
        return TokenCipher(settings.token_encryption_key)
    except TokenEncryptionError as e:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=str(e),
        ) from e


def get_integration_repo(
    db: Session = Depends(get_db),  # noqa: B008
) -> MailIntegrationRepository:
    """Get mail integration repository."""
    return MailIntegrationRepository(db)


def get_parsed_repo(
    db: Session = Depends(get_db),  # noqa: B008
) -> ParsedTransactionRepository:
    """Get parsed transaction repository."""
    return ParsedTransactionRepository(db)


def get_discovered_repo(
    db: Session = Depends(get_db),  # noqa: B008
) -> DiscoveredAccountRepository:
    """Get discovered account repository."""
    return DiscoveredAccountRepository(db)


def get_account_repo(
    db: Session = Depends(get_db),  # noqa: B008
) -> FinancialAccountRepository:
    """Get financial account repository."""
    return FinancialAccountRepository(db)


def get_connection_service(
    db: Session = Depends(get_db),  # noqa: B008
    gateways: dict[str, MailGatewayInterface] = Depends(get_gateways),  # noqa: B008
    cipher: TokenCipher = Depends(get_cipher),  # noqa: B008
) -> ConnectionService:
    """Get connection service."""
    return ConnectionService(db, gateways, cipher)


def get_keyless_connection_service(
    db: Session = Depends(get_db),  # noqa: B008
    gateways: dict[str, MailGatewayInterface] = Depends(get_gateways),  # noqa: B008
) -> ConnectionService:
    """Get connection service without a cipher (auth URL and disconnect)."""
    return ConnectionService(db, gateways)


def get_orchestrator(
    db: Session = Depends(get_db),  # noqa: B008
    gateways: dict[str, MailGatewayInterface] = Depends(get_gateways),  # noqa: B008
    parser: MessageParser = Depends(get_parser),  # noqa: B008
) -> SyncOrchestrator:
    """Get sync orchestrator without a cipher (review actions only)."""
    return SyncOrchestrator(db, gateways, parser=parser, settings=settings)


def get_syncing_orchestrator(
    db: Session = Depends(get_db),  # noqa: B008
    gateways: dict[str, MailGatewayInterface] = Depends(get_gateways),  # noqa: B008
    cipher: TokenCipher = Depends(get_cipher),  # noqa: B008
    parser: MessageParser = Depends(get_parser),  # noqa: B008
) -> SyncOrchestrator:
    """Get sync orchestrator able to decrypt tokens."""
    return SyncOrchestrator(db, gateways, cipher=cipher, parser=parser, settings=settings)


def _not_found(e: Exception) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


def _conflict(e: Exception) -> HTTPException:
    return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))


def _account_to_response(account: FinancialAccount) -> FinancialAccountResponse:
    """Convert a FinancialAccount model to its response schema."""
    return FinancialAccountResponse(
        id=account.id,
        user_id=account.user_id,
        account_type=account.account_type,
        display_name=account.display_name,
        institution=account.institution,
        account_number_partial=account.account_number_partial,
        current_balance=account.current_balance,
        currency=account.currency,
        is_active=account.is_active,
        fingerprints=[fp.fingerprint for fp in account.fingerprints],
        created_at=account.created_at,
    )


def _sync_to_response(result: SyncResult) -> SyncResultResponse:
    return SyncResultResponse(success=result.success, **asdict(result))


def _check_status(value: str | None, allowed: tuple[str, ...]) -> None:
    if value is not None and value not in allowed:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"status must be one of {', '.join(allowed)}",
        )


# --- Connection Endpoints ---


@router.get("/connect/{provider}", response_model=AuthUrlResponse)
async def get_auth_url(
    provider: str,
    service: Annotated[ConnectionService, Depends(get_keyless_connection_service)],
    state: str | None = None,
) -> AuthUrlResponse:
    """Get the consent URL for connecting a mailbox."""
    try:
        auth_url = service.start_connection(provider, state)
    except UnsupportedProviderError as e:
        raise _not_found(e) from e
    except MailGatewayError as e:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e)
        ) from e
    return AuthUrlResponse(provider=provider, auth_url=auth_url)


@router.post(
    "/connect/{provider}/callback",
    response_model=MailIntegrationResponse,
    status_code=status.HTTP_201_CREATED,
)
def complete_connection(
    provider: str,
    request: ConnectCallbackRequest,
    service: Annotated[ConnectionService, Depends(get_connection_service)],
) -> MailIntegrationResponse:
    """Exchange the OAuth code and store the connected mailbox."""
    try:
        integration = service.complete_connection(request.user_id, provider, request.code)
    except UnsupportedProviderError as e:
        raise _not_found(e) from e
    except MailGatewayError as e:
        logger.warning("Connecting %s mailbox failed: %s", provider, e)
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e)) from e
    return MailIntegrationResponse.model_validate(integration)


# --- Integration Endpoints ---


@router.get("/integrations", response_model=MailIntegrationListResponse)
async def list_integrations(
    user_id: str,
    integration_repo: Annotated[MailIntegrationRepository, Depends(get_integration_repo)],
) -> MailIntegrationListResponse:
    """List a user's connected mailboxes."""
    integrations = integration_repo.get_for_user(user_id)
    return MailIntegrationListResponse(
        integrations=[MailIntegrationResponse.model_validate(i) for i in integrations],
        total=len(integrations),
    )


@router.delete("/integrations/{integration_id}", status_code=status.HTTP_204_NO_CONTENT)
async def disconnect_integration(
    integration_id: int,
    service: Annotated[ConnectionService, Depends(get_keyless_connection_service)],
    delete: bool = False,
) -> None:
    """Disconnect a mailbox; ``delete=true`` also removes its parsed data."""
    try:
        service.disconnect(integration_id, delete=delete)
    except MailIntegrationNotFoundError as e:
        raise _not_found(e) from e


@router.post(
    "/integrations/{integration_id}/reset-watermark",
    response_model=MailIntegrationResponse,
)
async def reset_watermark(
    integration_id: int,
    orchestrator: Annotated[SyncOrchestrator, Depends(get_orchestrator)],
) -> MailIntegrationResponse:
    """Clear the watermark so the next sync re-scans the lookback window."""
    try:
        integration = orchestrator.reset_watermark(integration_id)
    except MailIntegrationNotFoundError as e:
        raise _not_found(e) from e
    return MailIntegrationResponse.model_validate(integration)


# --- Sync Endpoints ---


@router.post("/sync", response_model=SyncResultResponse)
def sync_mail(
    request: SyncRequest,
    orchestrator: Annotated[SyncOrchestrator, Depends(get_syncing_orchestrator)],
) -> SyncResultResponse:
    """Fetch, parse and apply new mail for every connected mailbox.

    Per-mailbox failures are reported in ``errors``; the call itself
    succeeds.
    """
    return _sync_to_response(orchestrator.sync_all(request.user_id))


@router.post("/reprocess", response_model=SyncResultResponse)
async def reprocess_mail(
    request: SyncRequest,
    orchestrator: Annotated[SyncOrchestrator, Depends(get_orchestrator)],
) -> SyncResultResponse:
    """Undo and re-apply every stored parsed transaction."""
    return _sync_to_response(orchestrator.reprocess_all(request.user_id))


# --- Discovered Account Endpoints ---


@router.get("/discovered-accounts", response_model=DiscoveredAccountListResponse)
async def list_discovered_accounts(
    user_id: str,
    discovered_repo: Annotated[DiscoveredAccountRepository, Depends(get_discovered_repo)],
    status_filter: Annotated[str | None, Query(alias="status")] = None,
) -> DiscoveredAccountListResponse:
    """List discovered accounts, highest confidence first."""
    _check_status(status_filter, DISCOVERY_STATUSES)
    discovered = discovered_repo.get_for_user(user_id, status=status_filter)
    return DiscoveredAccountListResponse(
        discovered_accounts=[DiscoveredAccountResponse.model_validate(d) for d in discovered],
        total=len(discovered),
    )


@router.post(
    "/discovered-accounts/{discovered_id}/approve",
    response_model=ApprovalResponse,
)
async def approve_discovered_account(
    discovered_id: int,
    orchestrator: Annotated[SyncOrchestrator, Depends(get_orchestrator)],
    request: ApproveDiscoveredAccountRequest | None = None,
) -> ApprovalResponse:
    """Approve a discovery, creating its account and applying pending rows."""
    overrides = request or ApproveDiscoveredAccountRequest()
    try:
        result = orchestrator.approve_discovered_account(
            discovered_id,
            display_name=overrides.display_name,
            account_type=overrides.account_type,
        )
    except DiscoveredAccountNotFoundError as e:
        raise _not_found(e) from e
    except (DiscoveredAccountStateError, AmbiguousAccountError) as e:
        raise _conflict(e) from e
    return ApprovalResponse(
        discovered_account=DiscoveredAccountResponse.model_validate(result.discovered_account),
        financial_account=_account_to_response(result.financial_account),
        transactions_applied=result.transactions_applied,
        needs_review=result.needs_review,
        warnings=result.warnings,
    )


@router.post(
    "/discovered-accounts/{discovered_id}/reject",
    response_model=DiscoveredAccountResponse,
)
async def reject_discovered_account(
    discovered_id: int,
    orchestrator: Annotated[SyncOrchestrator, Depends(get_orchestrator)],
) -> DiscoveredAccountResponse:
    """Reject a discovery and its pending transactions."""
    try:
        discovered = orchestrator.reject_discovered_account(discovered_id)
    except DiscoveredAccountNotFoundError as e:
        raise _not_found(e) from e
    except DiscoveredAccountStateError as e:
        raise _conflict(e) from e
    return DiscoveredAccountResponse.model_validate(discovered)


# --- Parsed Transaction Endpoints ---


@router.get("/parsed-transactions", response_model=ParsedTransactionListResponse)
async def list_parsed_transactions(
    user_id: str,
    parsed_repo: Annotated[ParsedTransactionRepository, Depends(get_parsed_repo)],
    status_filter: Annotated[str | None, Query(alias="status")] = None,
) -> ParsedTransactionListResponse:
    """List parsed transactions, newest first."""
    _check_status(status_filter, PARSED_STATUSES)
    rows = parsed_repo.get_for_user(user_id, status=status_filter)
    return ParsedTransactionListResponse(
        parsed_transactions=[ParsedTransactionResponse.model_validate(r) for r in rows],
        total=len(rows),
    )


@router.patch(
    "/parsed-transactions/{parsed_id}",
    response_model=ParsedTransactionResponse,
)
async def update_parsed_transaction(
    parsed_id: int,
    request: ParsedTransactionUpdate,
    orchestrator: Annotated[SyncOrchestrator, Depends(get_orchestrator)],
) -> ParsedTransactionResponse:
    """Correct a parsed transaction's amount or direction.

    Processed rows are re-applied to the ledger by their net difference.
    """
    try:
        parsed = orchestrator.update_parsed_transaction(
            parsed_id, amount=request.amount, direction=request.direction
        )
    except ParsedTransactionNotFoundError as e:
        raise _not_found(e) from e
    except LedgerInvariantError as e:
        raise _conflict(e) from e
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e)
        ) from e
    return ParsedTransactionResponse.model_validate(parsed)


@router.post(
    "/parsed-transactions/{parsed_id}/apply",
    response_model=ApplyResultResponse,
)
async def apply_parsed_transaction(
    parsed_id: int,
    orchestrator: Annotated[SyncOrchestrator, Depends(get_orchestrator)],
) -> ApplyResultResponse:
    """Apply one transaction regardless of its confidence score."""
    try:
        result = orchestrator.apply_parsed_transaction(parsed_id)
    except ParsedTransactionNotFoundError as e:
        raise _not_found(e) from e
    except (LedgerInvariantError, AmbiguousAccountError) as e:
        raise _conflict(e) from e
    return ApplyResultResponse(
        parsed_transaction_id=result.parsed_transaction_id,
        applied=result.applied,
        already_applied=result.already_applied,
        ledger_transaction_id=result.ledger_transaction_id,
        account_id=result.account_id,
        discovered_account_id=result.discovered_account_id,
        warning=result.warning,
    )


@router.post(
    "/parsed-transactions/{parsed_id}/reject",
    response_model=ParsedTransactionResponse,
)
async def reject_parsed_transaction(
    parsed_id: int,
    orchestrator: Annotated[SyncOrchestrator, Depends(get_orchestrator)],
) -> ParsedTransactionResponse:
    """Reject one pending transaction."""
    try:
        parsed = orchestrator.reject_parsed_transaction(parsed_id)
    except ParsedTransactionNotFoundError as e:
        raise _not_found(e) from e
    except LedgerInvariantError as e:
        raise _conflict(e) from e
    return ParsedTransactionResponse.model_validate(parsed)


# --- Financial Account Endpoints ---


@router.get("/accounts", response_model=FinancialAccountListResponse)
async def list_accounts(
    user_id: str,
    account_repo: Annotated[FinancialAccountRepository, Depends(get_account_repo)],
    include_inactive: bool = False,
) -> FinancialAccountListResponse:
    """List a user's financial accounts."""
    accounts = account_repo.get_for_user(user_id, active_only=not include_inactive)
    return FinancialAccountListResponse(
        accounts=[_account_to_response(a) for a in accounts],
        total=len(accounts),
    )


@router.post(
    "/accounts",
    response_model=FinancialAccountResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_account(
    request: FinancialAccountCreate,
    db: Annotated[Session, Depends(get_db)],
    account_repo: Annotated[FinancialAccountRepository, Depends(get_account_repo)],
) -> FinancialAccountResponse:
    """Create a financial account that mail fingerprints can match.

    Without explicit fingerprints, one is derived from the institution and
    last four digits.
    """
    raw_fingerprints = list(request.fingerprints)
    if not raw_fingerprints and request.institution and request.account_number_partial:
        raw_fingerprints.append(f"{request.institution} {request.account_number_partial}")

    keys = []
    for raw in raw_fingerprints:
        fingerprint = normalize_fingerprint(raw)
        if not fingerprint.last4:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail=f"Fingerprint '{raw}' has no account digits",
            )
        if account_repo.find_by_fingerprint(request.user_id, fingerprint.key):
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail=f"An active account already carries fingerprint '{fingerprint.key}'",
            )
        keys.append(fingerprint.key)

    account = account_repo.create(
        user_id=request.user_id,
        account_type=request.account_type,
        display_name=request.display_name,
        opening_balance=request.opening_balance,
        institution=request.institution,
        account_number_partial=request.account_number_partial,
        currency=request.currency,
        fingerprints=keys,
    )
    db.commit()
    return _account_to_response(account)

"""SyncOrchestrator: sync and reprocess cycles across a user's mailboxes.

A sync runs in three phases per integration:

1. Fetch (network only, in a thread pool): refresh the token when expired
   and list messages since the watermark.
2. Persist (caller's session): parse, deduplicate on (integration, message
   id), insert pending rows and advance the watermark in one commit.
3. Apply: pending rows in ascending occurred-at order through the
   reconciliation ledger, one commit per row.

Failures are recorded per integration in the returned ``SyncResult``;
sibling integrations always continue.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from xpend_api.core.config import Settings, settings as default_settings
from xpend_api.models.discovered_account import DiscoveredAccount
from xpend_api.models.financial_account import FinancialAccount
from xpend_api.models.mail_integration import MailIntegration
from xpend_api.models.parsed_transaction import ParsedTransaction
from xpend_api.repositories.discovered_account_repository import (
    DiscoveredAccountRepository,
)
from xpend_api.repositories.financial_account_repository import (
    FinancialAccountRepository,
)
from xpend_api.repositories.ledger_transaction_repository import (
    LedgerTransactionRepository,
)
from xpend_api.repositories.mail_integration_repository import (
    MailIntegrationRepository,
)
from xpend_api.repositories.parsed_transaction_repository import (
    ParsedTransactionRepository,
)
from xpend_api.services.account_resolver import (
    AccountResolver,
    AmbiguousAccountError,
    normalize_fingerprint,
)
from xpend_api.services.mail_gateway import (
    CredentialsExpiredError,
    MailGatewayError,
    MailGatewayInterface,
    MailMessage,
    OAuthTokens,
    TokenCipher,
    TokenEncryptionError,
    TransientMailError,
    get_gateway,
)
from xpend_api.services.message_parser import MessageParser, build_message_parser
from xpend_api.services.reconciliation_ledger import (
    ApplyResult,
    LedgerInvariantError,
    ReconciliationLedger,
)

logger = logging.getLogger(__name__)

# Refresh tokens this close to expiry before using them
TOKEN_EXPIRY_SKEW = timedelta(seconds=60)


@dataclass
class IntegrationError:
    """One failure surfaced to the caller.

    kind is one of: no_integrations, transient, reconnect_required,
    provider_error, ambiguous_account, storage_error.
    """

    integration_id: int | None
    email_address: str | None
    kind: str
    message: str


@dataclass
class IntegrationSummary:
    """Per-integration counters of one sync or reprocess run."""

    integration_id: int
    email_address: str
    status: str = "ok"
    transactions_ingested: int = 0
    transactions_applied: int = 0
    accounts_discovered: int = 0
    messages_skipped: int = 0
    watermark: datetime | None = None


@dataclass
class SyncResult:
    """Aggregate result of a sync or reprocess run. Never raised, always returned."""

    transactions_ingested: int = 0
    transactions_applied: int = 0
    accounts_discovered: int = 0
    messages_skipped: int = 0
    needs_review: int = 0
    warnings: list[str] = field(default_factory=list)
    errors: list[IntegrationError] = field(default_factory=list)
    integrations: list[IntegrationSummary] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors


@dataclass
class ApprovalResult:
    """Outcome of approving a discovered account."""

    discovered_account: DiscoveredAccount
    financial_account: FinancialAccount
    transactions_applied: int = 0
    needs_review: int = 0
    warnings: list[str] = field(default_factory=list)


@dataclass
class FetchRequest:
    """Plain-data snapshot of an integration handed to a fetch worker."""

    integration_id: int
    provider: str
    email_address: str
    access_token: str
    refresh_token: str | None
    token_expires_at: datetime | None
    watermark: datetime | None


@dataclass
class FetchOutcome:
    """What a fetch worker brings back; no ORM objects cross threads."""

    integration_id: int
    messages: list[MailMessage] = field(default_factory=list)
    refreshed_tokens: OAuthTokens | None = None
    error_kind: str | None = None
    error_message: str | None = None


class SyncOrchestrator:
    """Coordinates mail sync, reprocessing and review actions for a user."""

    def __init__(
        self,
        session: Session,
        gateways: dict[str, MailGatewayInterface],
        cipher: TokenCipher | None = None,
        parser: MessageParser | None = None,
        settings: Settings | None = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            session: SQLAlchemy database session; committed by this service.
            gateways: Provider to gateway registry.
            cipher: Token cipher (required for syncing, not for reprocessing).
            parser: Message parser (built from settings if omitted).
            settings: Application settings.
        """
        self._session = session
        self._gateways = gateways
        self._cipher = cipher
        self._settings = settings or default_settings
        self._parser = parser or build_message_parser(self._settings)
        self._integrations = MailIntegrationRepository(session)
        self._parsed = ParsedTransactionRepository(session)
        self._discovered = DiscoveredAccountRepository(session)
        self._accounts = FinancialAccountRepository(session)
        self._entries = LedgerTransactionRepository(session)
        self._resolver = AccountResolver(session)
        self._ledger = ReconciliationLedger(
            session,
            resolver=self._resolver,
            balance_floor=self._settings.balance_warning_floor,
        )

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    def sync_all(self, user_id: str) -> SyncResult:
        """Fetch, ingest and apply new mail for every active integration.

        Args:
            user_id: Owning user ID.

        Returns:
            SyncResult with totals and per-integration errors.
        """
        result = SyncResult()
        integrations = self._integrations.get_active_for_user(user_id)
        if not integrations:
            result.errors.append(
                IntegrationError(None, None, "no_integrations", "No connected mail accounts")
            )
            return result

        requests: list[FetchRequest] = []
        for integration in integrations:
            try:
                requests.append(self._build_fetch_request(integration))
            except TokenEncryptionError as e:
                self._integrations.mark_reconnect_required(integration.id)
                self._session.commit()
                result.errors.append(
                    IntegrationError(
                        integration.id, integration.email_address, "reconnect_required", str(e)
                    )
                )
                result.integrations.append(
                    IntegrationSummary(
                        integration.id, integration.email_address, status="reconnect_required"
                    )
                )

        outcomes = self._fetch_all(requests)

        for request in requests:
            outcome = outcomes[request.integration_id]
            summary = IntegrationSummary(request.integration_id, request.email_address)
            result.integrations.append(summary)
            try:
                self._ingest(user_id, request, outcome, summary, result)
            except LedgerInvariantError:
                self._session.rollback()
                raise
            except SQLAlchemyError as e:
                self._session.rollback()
                logger.exception("Sync of integration %d failed", request.integration_id)
                summary.status = "failed"
                result.errors.append(
                    IntegrationError(
                        request.integration_id, request.email_address, "storage_error", str(e)
                    )
                )

        logger.info(
            "Sync for user %s: %d ingested, %d applied, %d discovered, %d errors",
            user_id,
            result.transactions_ingested,
            result.transactions_applied,
            result.accounts_discovered,
            len(result.errors),
        )
        return result

    def _build_fetch_request(self, integration: MailIntegration) -> FetchRequest:
        if self._cipher is None:
            raise TokenEncryptionError("TOKEN_ENCRYPTION_KEY is not configured")
        return FetchRequest(
            integration_id=integration.id,
            provider=integration.provider,
            email_address=integration.email_address,
            access_token=self._cipher.decrypt(integration.encrypted_access_token),
            refresh_token=(
                self._cipher.decrypt(integration.encrypted_refresh_token)
                if integration.encrypted_refresh_token
                else None
            ),
            token_expires_at=integration.token_expires_at,
            watermark=integration.last_synced_at,
        )

    def _fetch_all(self, requests: list[FetchRequest]) -> dict[int, FetchOutcome]:
        if not requests:
            return {}
        workers = max(1, min(self._settings.sync_max_workers, len(requests)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="mail-fetch") as pool:
            outcomes = list(pool.map(self._fetch, requests))
        return {outcome.integration_id: outcome for outcome in outcomes}

    def _fetch(self, request: FetchRequest) -> FetchOutcome:
        """Network phase for one integration. Runs in a worker thread."""
        outcome = FetchOutcome(integration_id=request.integration_id)
        try:
            gateway = get_gateway(self._gateways, request.provider)
            access_token = request.access_token
            expires_at = request.token_expires_at
            if (
                request.refresh_token
                and expires_at is not None
                and expires_at <= datetime.utcnow() + TOKEN_EXPIRY_SKEW
            ):
                outcome.refreshed_tokens = gateway.refresh_access_token(request.refresh_token)
                access_token = outcome.refreshed_tokens.access_token

            try:
                outcome.messages = self._list_messages(gateway, access_token, request)
            except CredentialsExpiredError:
                if outcome.refreshed_tokens is not None or not request.refresh_token:
                    raise
                logger.info("Access token rejected for integration %d; refreshing", request.integration_id)
                outcome.refreshed_tokens = gateway.refresh_access_token(request.refresh_token)
                outcome.messages = self._list_messages(
                    gateway, outcome.refreshed_tokens.access_token, request
                )
        except CredentialsExpiredError as e:
            outcome.error_kind = "reconnect_required"
            outcome.error_message = f"Reconnect required: {e}"
        except TransientMailError as e:
            outcome.error_kind = "transient"
            outcome.error_message = str(e)
        except MailGatewayError as e:
            outcome.error_kind = "provider_error"
            outcome.error_message = str(e)
        except Exception as e:
            logger.exception("Unexpected fetch failure for integration %d", request.integration_id)
            outcome.error_kind = "provider_error"
            outcome.error_message = f"Unexpected fetch failure: {e!r}"

        if outcome.error_kind:
            logger.warning(
                "Fetch for integration %d failed (%s): %s",
                request.integration_id,
                outcome.error_kind,
                outcome.error_message,
            )
        return outcome

    def _list_messages(
        self, gateway: MailGatewayInterface, access_token: str, request: FetchRequest
    ) -> list[MailMessage]:
        """List every message past the watermark.

        A truncated batch holds the oldest messages of the window, so the
        listing continues from the newest of them until the window is drained.
        """
        messages: list[MailMessage] = []
        watermark = request.watermark
        while True:
            batch = gateway.list_messages_since(
                access_token,
                watermark,
                lookback_days=self._settings.sync_lookback_days,
                max_results=self._settings.sync_max_messages,
            )
            messages.extend(batch.messages)
            if not batch.truncated or not batch.messages:
                return messages
            newest = max(message.received_at for message in batch.messages)
            if watermark is not None and newest <= watermark:
                return messages
            watermark = newest

    def _ingest(
        self,
        user_id: str,
        request: FetchRequest,
        outcome: FetchOutcome,
        summary: IntegrationSummary,
        result: SyncResult,
    ) -> None:
        """Persist and apply phases for one integration."""
        integration_id = request.integration_id

        if outcome.refreshed_tokens is not None and outcome.error_kind != "reconnect_required":
            tokens = outcome.refreshed_tokens
            self._integrations.update_tokens(
                integration_id,
                encrypted_access_token=self._cipher.encrypt(tokens.access_token),
                token_expires_at=tokens.expires_at,
                encrypted_refresh_token=(
                    self._cipher.encrypt(tokens.refresh_token) if tokens.refresh_token else None
                ),
            )
            self._session.commit()

        if outcome.error_kind is not None:
            if outcome.error_kind == "reconnect_required":
                self._integrations.mark_reconnect_required(integration_id)
                self._session.commit()
            summary.status = outcome.error_kind
            result.errors.append(
                IntegrationError(
                    integration_id, request.email_address, outcome.error_kind, outcome.error_message or ""
                )
            )
            return

        # Persist: all new rows and the watermark become durable together.
        batch = self._parser.parse_batch(outcome.messages)
        summary.messages_skipped = batch.skipped
        fresh_ids: set[int] = set()
        for candidate in batch.candidates:
            if self._parsed.exists(integration_id, candidate.source_message_id):
                continue
            parsed = self._parsed.create(
                mail_integration_id=integration_id,
                source_message_id=candidate.source_message_id,
                amount=candidate.amount,
                direction=candidate.direction,
                account_fingerprint=candidate.account_fingerprint,
                normalized_fingerprint=normalize_fingerprint(candidate.account_fingerprint).key,
                occurred_at=candidate.occurred_at,
                received_at=candidate.received_at,
                description=candidate.description,
                confidence_score=candidate.confidence_score,
                subject=candidate.subject,
                sender=candidate.sender,
                currency=candidate.currency,
                reported_balance=candidate.reported_balance,
                rule_name=candidate.rule_name,
                account_type=candidate.account_type,
            )
            fresh_ids.add(parsed.id)
            summary.transactions_ingested += 1

        watermark = request.watermark
        if outcome.messages:
            latest = max(message.received_at for message in outcome.messages)
            if watermark is None or latest > watermark:
                watermark = latest
        self._integrations.set_watermark(integration_id, watermark)
        self._integrations.record_sync_stats(integration_id, summary.transactions_ingested, 0)
        self._session.commit()
        summary.watermark = watermark
        result.transactions_ingested += summary.transactions_ingested
        result.messages_skipped += summary.messages_skipped

        self._apply_rows(
            user_id,
            integration_id,
            request.email_address,
            self._parsed.get_pending(integration_id),
            result,
            summary,
            fresh_ids=fresh_ids,
        )
        if summary.accounts_discovered:
            self._integrations.record_sync_stats(integration_id, 0, summary.accounts_discovered)
            self._session.commit()

    def _apply_rows(
        self,
        user_id: str,
        integration_id: int,
        email_address: str,
        rows: list[ParsedTransaction],
        result: SyncResult,
        summary: IntegrationSummary | None = None,
        min_confidence: Decimal | None = None,
        fresh_ids: set[int] | None = None,
    ) -> None:
        """Apply pending rows in order, committing after each one.

        Only rows in ``fresh_ids`` (ingested by this run) count as new
        sightings of an unknown account; older rows are just retried.
        """
        threshold = (
            self._settings.auto_apply_min_confidence if min_confidence is None else min_confidence
        )
        reported_ambiguous: set[str] = set()

        for parsed in rows:
            if parsed.status != "pending":
                continue
            if parsed.confidence_score < threshold and not parsed.manually_applied:
                result.needs_review += 1
                continue
            fingerprint = parsed.normalized_fingerprint
            try:
                outcome = self._ledger.apply(
                    parsed,
                    user_id=user_id,
                    count_sighting=fresh_ids is not None and parsed.id in fresh_ids,
                )
            except AmbiguousAccountError as e:
                self._session.rollback()
                if e.fingerprint not in reported_ambiguous:
                    reported_ambiguous.add(e.fingerprint)
                    logger.warning("Integration %d: %s", integration_id, e)
                    result.errors.append(
                        IntegrationError(integration_id, email_address, "ambiguous_account", str(e))
                    )
                continue

            if outcome.applied:
                result.transactions_applied += 1
                if summary is not None:
                    summary.transactions_applied += 1
                if outcome.warning:
                    result.warnings.append(outcome.warning)
            elif outcome.discovered_account_id is not None:
                discovered = self._discovered.get(outcome.discovered_account_id)
                if discovered.status == "rejected":
                    self._ledger.reject(parsed)
                elif outcome.newly_discovered:
                    result.accounts_discovered += 1
                    if summary is not None:
                        summary.accounts_discovered += 1
                    logger.info(
                        "Integration %d: new account candidate %s", integration_id, fingerprint
                    )
            self._session.commit()

    # ------------------------------------------------------------------
    # Reprocess and watermark
    # ------------------------------------------------------------------

    def reprocess_all(self, user_id: str) -> SyncResult:
        """Re-run resolution and application over stored rows without fetching.

        Prior effects are undone first (processed rows reversed newest
        first, rejected rows reset, approved discoveries whose account is
        gone reset), so running it repeatedly never compounds balances.
        """
        result = SyncResult()
        integrations = self._integrations.get_active_for_user(user_id)
        if not integrations:
            result.errors.append(
                IntegrationError(None, None, "no_integrations", "No connected mail accounts")
            )
            return result

        for integration in integrations:
            integration_id = integration.id
            email_address = integration.email_address
            summary = IntegrationSummary(integration_id, email_address, watermark=integration.last_synced_at)
            result.integrations.append(summary)
            try:
                self._undo_integration(integration_id)
                self._session.commit()
                self._apply_rows(
                    user_id,
                    integration_id,
                    email_address,
                    self._parsed.get_pending(integration_id),
                    result,
                    summary,
                )
            except LedgerInvariantError:
                self._session.rollback()
                raise
            except SQLAlchemyError as e:
                self._session.rollback()
                logger.exception("Reprocess of integration %d failed", integration_id)
                summary.status = "failed"
                result.errors.append(
                    IntegrationError(integration_id, email_address, "storage_error", str(e))
                )

        logger.info(
            "Reprocess for user %s: %d applied, %d errors",
            user_id,
            result.transactions_applied,
            len(result.errors),
        )
        return result

    def _undo_integration(self, integration_id: int) -> None:
        processed = self._parsed.get_by_integration(integration_id, status="processed")
        for parsed in reversed(processed):
            entry = self._entries.get_active_for_parsed(parsed.id)
            if entry is not None:
                self._ledger.reverse(entry.id)
            else:
                self._parsed.reset_to_pending(parsed.id)

        for parsed in self._parsed.get_by_integration(integration_id, status="rejected"):
            self._parsed.reset_to_pending(parsed.id)

        for discovered in self._discovered.get_by_integration(integration_id, status="approved"):
            if discovered.financial_account_id is None or not self._accounts.exists_active(
                discovered.financial_account_id
            ):
                self._resolver.reset(discovered.id)

    def reset_watermark(self, integration_id: int) -> MailIntegration:
        """Clear the watermark so the next sync re-scans the lookback window.

        Raises:
            MailIntegrationNotFoundError: If the integration doesn't exist.
        """
        integration = self._integrations.set_watermark(integration_id, None)
        self._session.commit()
        logger.info("Watermark reset for integration %d", integration_id)
        return integration

    # ------------------------------------------------------------------
    # Review actions
    # ------------------------------------------------------------------

    def approve_discovered_account(
        self,
        discovered_id: int,
        display_name: str | None = None,
        account_type: str | None = None,
    ) -> ApprovalResult:
        """Approve a discovery and apply the pending rows it now resolves.

        Raises:
            DiscoveredAccountNotFoundError: If the discovery doesn't exist.
            DiscoveredAccountStateError: If the discovery was rejected.
        """
        account = self._resolver.approve(
            discovered_id, display_name=display_name, account_type=account_type
        )
        self._session.commit()

        discovered = self._discovered.get(discovered_id)
        integration = discovered.mail_integration
        run = SyncResult()
        self._apply_rows(
            integration.user_id,
            integration.id,
            integration.email_address,
            self._parsed.get_pending_by_fingerprint(integration.id, discovered.normalized_fingerprint),
            run,
        )
        return ApprovalResult(
            discovered_account=discovered,
            financial_account=self._accounts.get(account.id),
            transactions_applied=run.transactions_applied,
            needs_review=run.needs_review,
            warnings=run.warnings,
        )

    def reject_discovered_account(self, discovered_id: int) -> DiscoveredAccount:
        """Reject a discovery and the pending rows carrying its fingerprint.

        Raises:
            DiscoveredAccountNotFoundError: If the discovery doesn't exist.
            DiscoveredAccountStateError: If the discovery was approved.
        """
        discovered = self._resolver.reject(discovered_id)
        for parsed in self._parsed.get_pending_by_fingerprint(
            discovered.mail_integration_id, discovered.normalized_fingerprint
        ):
            self._ledger.reject(parsed)
        self._session.commit()
        return discovered

    def update_parsed_transaction(
        self,
        parsed_id: int,
        amount: Decimal | None = None,
        direction: str | None = None,
    ) -> ParsedTransaction:
        """Edit a parsed transaction's amount or direction.

        Pending rows are edited in place; processed rows go through the
        ledger's net-delta update.

        Raises:
            ParsedTransactionNotFoundError: If the row doesn't exist.
            LedgerInvariantError: If the row is rejected.
            ValueError: If the amount or direction is invalid.
        """
        parsed = self._parsed.get(parsed_id)
        new_amount = parsed.amount if amount is None else amount
        new_direction = parsed.direction if direction is None else direction
        if new_direction not in ("credit", "debit"):
            raise ValueError(f"Unknown transaction direction: {new_direction!r}")
        if new_amount <= 0:
            raise ValueError("Transaction amount must be positive")

        if parsed.status == "rejected":
            raise LedgerInvariantError(f"Parsed transaction {parsed_id} is rejected")
        if parsed.status == "processed":
            entry = self._entries.get_active_for_parsed(parsed.id)
            if entry is None:
                raise LedgerInvariantError(
                    f"Parsed transaction {parsed_id} has no active ledger transaction"
                )
            self._ledger.apply_update(entry.id, new_amount, new_direction)
        else:
            parsed.amount = new_amount
            parsed.direction = new_direction
        self._session.commit()
        return self._parsed.get(parsed_id)

    def apply_parsed_transaction(self, parsed_id: int) -> ApplyResult:
        """Manually apply one row, ignoring the confidence threshold.

        The row is flagged so that reprocessing re-applies it the same way.

        Raises:
            ParsedTransactionNotFoundError: If the row doesn't exist.
            LedgerInvariantError: If the row is rejected.
            AmbiguousAccountError: If its fingerprint matches several accounts.
        """
        parsed = self._parsed.get(parsed_id)
        if parsed.status == "pending":
            parsed.manually_applied = True
        outcome = self._ledger.apply(parsed, count_sighting=False)
        self._session.commit()
        return outcome

    def reject_parsed_transaction(self, parsed_id: int) -> ParsedTransaction:
        """Manually reject one pending row.

        Raises:
            ParsedTransactionNotFoundError: If the row doesn't exist.
            LedgerInvariantError: If the row is not pending.
        """
        parsed = self._ledger.reject(self._parsed.get(parsed_id))
        self._session.commit()
        return parsed

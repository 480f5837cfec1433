"""Tests for SyncOrchestrator."""

from collections.abc import Callable
from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from cryptography.fernet import Fernet
from sqlalchemy.orm import Session

from xpend_api.core.config import Settings
from xpend_api.models.financial_account import FinancialAccount
from xpend_api.models.mail_integration import MailIntegration
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
from xpend_api.services.account_resolver import DiscoveredAccountStateError
from xpend_api.services.mail_gateway import (
    CredentialsExpiredError,
    MailGatewayInterface,
    MailMessage,
    TokenCipher,
    TransientMailError,
)
from xpend_api.services.reconciliation_ledger import LedgerInvariantError
from xpend_api.services.sync_orchestrator import SyncOrchestrator


def sbi_alert(
    make_mail: Callable[..., MailMessage],
    message_id: str,
    direction: str,
    amount: str,
    day: int,
    balance: str,
    account: str = "XX1234",
) -> MailMessage:
    """SBI alert for January 2025 quoting the balance after the transaction."""
    verb = "debited" if direction == "debit" else "credited"
    body = (
        f"Dear Customer, your A/c {account} {verb} by Rs.{amount} on {day:02d}Jan25 "
        f"by transfer. Avl Bal Rs.{balance}"
    )
    return make_mail(message_id, body, datetime(2025, 1, day, 10, 0))


@pytest.fixture
def alerts(make_mail: Callable[..., MailMessage]) -> list[MailMessage]:
    """Three alerts taking 10000 to 9500, 9200 and 10800."""
    return [
        sbi_alert(make_mail, "m1", "debit", "500.00", 12, "9,500.00"),
        sbi_alert(make_mail, "m2", "debit", "300.00", 13, "9,200.00"),
        sbi_alert(make_mail, "m3", "credit", "1,600.00", 14, "10,800.00"),
    ]


@pytest.fixture
def orchestrator(
    db_session: Session,
    gateways: dict[str, MailGatewayInterface],
    cipher: TokenCipher,
    test_settings: Settings,
) -> SyncOrchestrator:
    return SyncOrchestrator(db_session, gateways, cipher=cipher, settings=test_settings)


def _balance(db_session: Session, account_id: int) -> Decimal:
    return FinancialAccountRepository(db_session).get(account_id).current_balance


class TestSyncAll:
    """Tests for the sync cycle."""

    def test_sync_applies_alerts_to_known_account(
        self,
        db_session: Session,
        orchestrator: SyncOrchestrator,
        fake_gateway,
        alerts: list[MailMessage],
        make_integration: Callable[..., MailIntegration],
        make_account: Callable[..., FinancialAccount],
    ) -> None:
        integration = make_integration()
        account = make_account()
        fake_gateway.mailboxes["token-a"] = alerts

        result = orchestrator.sync_all("user-1")

        assert result.success
        assert result.transactions_ingested == 3
        assert result.transactions_applied == 3
        assert result.accounts_discovered == 0
        assert _balance(db_session, account.id) == Decimal("10800")
        assert integration.last_synced_at == datetime(2025, 1, 14, 10, 0)
        assert integration.transactions_ingested == 3

    def test_rows_apply_in_occurred_order(
        self,
        db_session: Session,
        orchestrator: SyncOrchestrator,
        fake_gateway,
        alerts: list[MailMessage],
        make_integration: Callable[..., MailIntegration],
        make_account: Callable[..., FinancialAccount],
    ) -> None:
        """Test running balances follow transaction time, not fetch order."""
        make_integration()
        account = make_account()
        fake_gateway.mailboxes["token-a"] = list(reversed(alerts))

        orchestrator.sync_all("user-1")

        entries = LedgerTransactionRepository(db_session).get_for_account(account.id)
        assert [e.balance_after for e in entries] == [
            Decimal("9500"),
            Decimal("9200"),
            Decimal("10800"),
        ]

    def test_resync_never_duplicates(
        self,
        db_session: Session,
        orchestrator: SyncOrchestrator,
        fake_gateway,
        alerts: list[MailMessage],
        make_integration: Callable[..., MailIntegration],
        make_account: Callable[..., FinancialAccount],
    ) -> None:
        """Test repeated syncs, even after a watermark reset, apply each alert once."""
        integration = make_integration()
        account = make_account()
        fake_gateway.mailboxes["token-a"] = alerts
        orchestrator.sync_all("user-1")

        second = orchestrator.sync_all("user-1")
        orchestrator.reset_watermark(integration.id)
        third = orchestrator.sync_all("user-1")

        assert second.transactions_ingested == 0
        assert third.transactions_ingested == 0
        assert third.transactions_applied == 0
        assert fake_gateway.list_calls[1] == ("token-a", datetime(2025, 1, 14, 10, 0))
        assert fake_gateway.list_calls[2] == ("token-a", None)
        assert _balance(db_session, account.id) == Decimal("10800")
        assert len(ParsedTransactionRepository(db_session).get_by_integration(integration.id)) == 3

    def test_failures_are_isolated_per_integration(
        self,
        db_session: Session,
        orchestrator: SyncOrchestrator,
        fake_gateway,
        alerts: list[MailMessage],
        make_integration: Callable[..., MailIntegration],
        make_account: Callable[..., FinancialAccount],
    ) -> None:
        """Test one healthy, one flaky and one revoked mailbox in the same run."""
        healthy = make_integration("token-a")
        flaky = make_integration("token-b", refresh_token="refresh-b")
        revoked = make_integration("token-c", refresh_token="refresh-c")
        account = make_account()
        fake_gateway.mailboxes["token-a"] = alerts
        fake_gateway.failures["token-b"] = TransientMailError("Gmail unavailable")
        fake_gateway.expired_tokens.add("token-c")
        fake_gateway.refresh_error = CredentialsExpiredError("invalid_grant")

        result = orchestrator.sync_all("user-1")

        assert not result.success
        assert sorted(e.kind for e in result.errors) == ["reconnect_required", "transient"]
        assert result.transactions_applied == 3
        assert _balance(db_session, account.id) == Decimal("10800")
        statuses = {s.integration_id: s.status for s in result.integrations}
        assert statuses == {
            healthy.id: "ok",
            flaky.id: "transient",
            revoked.id: "reconnect_required",
        }
        assert flaky.last_synced_at is None
        assert flaky.is_active is True
        assert revoked.is_active is False
        assert revoked.status == "reconnect_required"

    def test_fetch_cap_drains_older_messages(
        self,
        db_session: Session,
        gateways: dict[str, MailGatewayInterface],
        cipher: TokenCipher,
        test_settings: Settings,
        fake_gateway,
        alerts: list[MailMessage],
        make_integration: Callable[..., MailIntegration],
        make_account: Callable[..., FinancialAccount],
    ) -> None:
        """Test a window larger than the fetch cap is listed in oldest-first chunks."""
        capped = SyncOrchestrator(
            db_session,
            gateways,
            cipher=cipher,
            settings=test_settings.model_copy(update={"sync_max_messages": 2}),
        )
        integration = make_integration()
        account = make_account()
        fake_gateway.mailboxes["token-a"] = alerts

        result = capped.sync_all("user-1")

        assert result.transactions_ingested == 3
        assert result.transactions_applied == 3
        assert _balance(db_session, account.id) == Decimal("10800")
        assert integration.last_synced_at == datetime(2025, 1, 14, 10, 0)
        assert fake_gateway.list_calls == [
            ("token-a", None),
            ("token-a", datetime(2025, 1, 13, 10, 0)),
        ]

    def test_unexpected_fetch_error_is_isolated(
        self,
        db_session: Session,
        orchestrator: SyncOrchestrator,
        fake_gateway,
        make_mail: Callable[..., MailMessage],
        alerts: list[MailMessage],
        make_integration: Callable[..., MailIntegration],
        make_account: Callable[..., FinancialAccount],
    ) -> None:
        """Test a non-gateway exception in one fetch is reported, not raised."""
        first = make_integration("token-a")
        broken = make_integration("token-b")
        third = make_integration("token-c")
        account_a = make_account()
        account_c = make_account("SBI Bank XX5678", opening_balance=Decimal("5000"))
        fake_gateway.mailboxes["token-a"] = alerts
        fake_gateway.failures["token-b"] = ValueError("Expecting value: line 1 column 1")
        fake_gateway.mailboxes["token-c"] = [
            sbi_alert(make_mail, "c1", "debit", "250.00", 15, "4,750.00", account="XX5678")
        ]

        result = orchestrator.sync_all("user-1")

        assert [(e.integration_id, e.kind) for e in result.errors] == [
            (broken.id, "provider_error")
        ]
        assert result.transactions_applied == 4
        assert _balance(db_session, account_a.id) == Decimal("10800")
        assert _balance(db_session, account_c.id) == Decimal("4750")
        statuses = {s.integration_id: s.status for s in result.integrations}
        assert statuses == {first.id: "ok", broken.id: "provider_error", third.id: "ok"}
        assert broken.last_synced_at is None
        assert broken.is_active is True

    def test_expired_token_is_refreshed_once(
        self,
        db_session: Session,
        orchestrator: SyncOrchestrator,
        fake_gateway,
        cipher: TokenCipher,
        alerts: list[MailMessage],
        make_integration: Callable[..., MailIntegration],
    ) -> None:
        """Test a rejected access token triggers one refresh and the new token is stored."""
        integration = make_integration("stale", refresh_token="refresh-s")
        fake_gateway.expired_tokens.add("stale")
        fake_gateway.refreshed["refresh-s"] = "token-new"
        fake_gateway.mailboxes["token-new"] = alerts

        result = orchestrator.sync_all("user-1")

        assert result.success
        assert result.transactions_ingested == 3
        assert fake_gateway.refresh_calls == ["refresh-s"]
        assert cipher.decrypt(integration.encrypted_access_token) == "token-new"
        assert cipher.decrypt(integration.encrypted_refresh_token) == "refresh-s"
        assert integration.status == "connected"

    def test_token_near_expiry_is_refreshed_before_fetch(
        self,
        orchestrator: SyncOrchestrator,
        fake_gateway,
        make_integration: Callable[..., MailIntegration],
    ) -> None:
        make_integration(
            "old", refresh_token="refresh-o", token_expires_at=datetime.utcnow() + timedelta(seconds=30)
        )
        fake_gateway.refreshed["refresh-o"] = "token-new"

        orchestrator.sync_all("user-1")

        assert fake_gateway.refresh_calls == ["refresh-o"]
        assert [call[0] for call in fake_gateway.list_calls] == ["token-new"]

    def test_expired_without_refresh_token_requires_reconnect(
        self,
        orchestrator: SyncOrchestrator,
        fake_gateway,
        make_integration: Callable[..., MailIntegration],
    ) -> None:
        integration = make_integration("stale", refresh_token=None)
        fake_gateway.expired_tokens.add("stale")

        result = orchestrator.sync_all("user-1")

        assert [e.kind for e in result.errors] == ["reconnect_required"]
        assert fake_gateway.refresh_calls == []
        assert integration.status == "reconnect_required"

    def test_undecryptable_tokens_require_reconnect(
        self,
        db_session: Session,
        gateways: dict[str, MailGatewayInterface],
        test_settings: Settings,
        make_integration: Callable[..., MailIntegration],
    ) -> None:
        """Test tokens stored under another key surface as reconnect_required."""
        integration = make_integration()
        foreign = TokenCipher(Fernet.generate_key())

        result = SyncOrchestrator(db_session, gateways, cipher=foreign, settings=test_settings).sync_all(
            "user-1"
        )

        assert [e.kind for e in result.errors] == ["reconnect_required"]
        assert integration.status == "reconnect_required"

    def test_no_integrations(self, orchestrator: SyncOrchestrator) -> None:
        result = orchestrator.sync_all("nobody")

        assert not result.success
        assert [e.kind for e in result.errors] == ["no_integrations"]

    def test_unparseable_messages_are_skipped(
        self,
        orchestrator: SyncOrchestrator,
        fake_gateway,
        make_mail: Callable[..., MailMessage],
        make_integration: Callable[..., MailIntegration],
    ) -> None:
        integration = make_integration()
        fake_gateway.mailboxes["token-a"] = [
            make_mail("promo", "Special offer! Get 5% cashback", datetime(2025, 1, 20)),
        ]

        result = orchestrator.sync_all("user-1")

        assert result.success
        assert result.messages_skipped == 1
        assert result.transactions_ingested == 0
        # The watermark still moves past messages that were skipped.
        assert integration.last_synced_at == datetime(2025, 1, 20)

    def test_low_confidence_rows_need_review(
        self,
        db_session: Session,
        orchestrator: SyncOrchestrator,
        fake_gateway,
        make_mail: Callable[..., MailMessage],
        make_integration: Callable[..., MailIntegration],
        make_account: Callable[..., FinancialAccount],
    ) -> None:
        """Test rows below the threshold stay pending until applied manually."""
        integration = make_integration()
        account = make_account("SBI Bank XX123")
        fake_gateway.mailboxes["token-a"] = [
            make_mail(
                "m1",
                "Your A/c XX123 debited by Rs.500.00 by transfer.",
                datetime(2025, 1, 12),
            )
        ]

        result = orchestrator.sync_all("user-1")

        assert result.needs_review == 1
        assert result.transactions_applied == 0
        parsed = ParsedTransactionRepository(db_session).get_pending(integration.id)[0]
        assert parsed.confidence_score == Decimal("0.6")

        applied = orchestrator.apply_parsed_transaction(parsed.id)

        assert applied.applied
        assert _balance(db_session, account.id) == Decimal("9500")

    def test_ambiguous_fingerprint_reported_once(
        self,
        db_session: Session,
        orchestrator: SyncOrchestrator,
        fake_gateway,
        alerts: list[MailMessage],
        make_integration: Callable[..., MailIntegration],
        make_account: Callable[..., FinancialAccount],
    ) -> None:
        integration = make_integration()
        make_account()
        make_account(display_name="Duplicate")
        fake_gateway.mailboxes["token-a"] = alerts

        result = orchestrator.sync_all("user-1")

        assert [e.kind for e in result.errors] == ["ambiguous_account"]
        assert result.transactions_applied == 0
        assert len(ParsedTransactionRepository(db_session).get_pending(integration.id)) == 3


class TestDiscoveryFlow:
    """Tests for discovery, approval and rejection through the orchestrator."""

    def test_unknown_account_is_discovered_then_approved(
        self,
        db_session: Session,
        orchestrator: SyncOrchestrator,
        fake_gateway,
        alerts: list[MailMessage],
        make_integration: Callable[..., MailIntegration],
    ) -> None:
        """Test approval opens the account so pending rows land on the reported balance."""
        integration = make_integration()
        fake_gateway.mailboxes["token-a"] = alerts[:2]

        result = orchestrator.sync_all("user-1")

        assert result.transactions_ingested == 2
        assert result.transactions_applied == 0
        assert result.accounts_discovered == 1
        discovered = DiscoveredAccountRepository(db_session).get_by_integration(integration.id)
        assert len(discovered) == 1
        assert discovered[0].sighting_count == 2
        assert discovered[0].reported_balance == Decimal("9200")
        assert integration.accounts_discovered == 1

        approval = orchestrator.approve_discovered_account(discovered[0].id)

        assert approval.transactions_applied == 2
        assert approval.discovered_account.status == "approved"
        assert approval.financial_account.current_balance == Decimal("9200")
        assert discovered[0].inferred_opening_balance == Decimal("10000")

    def test_later_alerts_apply_after_approval(
        self,
        db_session: Session,
        orchestrator: SyncOrchestrator,
        fake_gateway,
        alerts: list[MailMessage],
        make_integration: Callable[..., MailIntegration],
    ) -> None:
        integration = make_integration()
        fake_gateway.mailboxes["token-a"] = alerts[:2]
        orchestrator.sync_all("user-1")
        discovered = DiscoveredAccountRepository(db_session).get_by_integration(integration.id)[0]
        account = orchestrator.approve_discovered_account(discovered.id).financial_account
        fake_gateway.mailboxes["token-a"] = alerts

        result = orchestrator.sync_all("user-1")

        assert result.transactions_ingested == 1
        assert result.transactions_applied == 1
        assert _balance(db_session, account.id) == Decimal("10800")

    def test_rejected_discovery_rejects_rows(
        self,
        db_session: Session,
        orchestrator: SyncOrchestrator,
        fake_gateway,
        alerts: list[MailMessage],
        make_integration: Callable[..., MailIntegration],
    ) -> None:
        """Test rejecting an account drops its current and future rows."""
        integration = make_integration()
        fake_gateway.mailboxes["token-a"] = alerts[:2]
        orchestrator.sync_all("user-1")
        discovered = DiscoveredAccountRepository(db_session).get_by_integration(integration.id)[0]

        orchestrator.reject_discovered_account(discovered.id)
        fake_gateway.mailboxes["token-a"] = alerts
        result = orchestrator.sync_all("user-1")

        parsed = ParsedTransactionRepository(db_session)
        assert result.accounts_discovered == 0
        assert parsed.count_by_status(integration.id) == {"pending": 0, "processed": 0, "rejected": 3}
        assert FinancialAccountRepository(db_session).get_for_user("user-1") == []

    def test_approve_rejected_discovery_fails(
        self,
        db_session: Session,
        orchestrator: SyncOrchestrator,
        fake_gateway,
        alerts: list[MailMessage],
        make_integration: Callable[..., MailIntegration],
    ) -> None:
        integration = make_integration()
        fake_gateway.mailboxes["token-a"] = alerts[:1]
        orchestrator.sync_all("user-1")
        discovered = DiscoveredAccountRepository(db_session).get_by_integration(integration.id)[0]
        orchestrator.reject_discovered_account(discovered.id)

        with pytest.raises(DiscoveredAccountStateError):
            orchestrator.approve_discovered_account(discovered.id)


class TestReprocess:
    """Tests for reprocess_all()."""

    def test_reprocess_is_idempotent(
        self,
        db_session: Session,
        orchestrator: SyncOrchestrator,
        fake_gateway,
        alerts: list[MailMessage],
        make_integration: Callable[..., MailIntegration],
        make_account: Callable[..., FinancialAccount],
    ) -> None:
        make_integration()
        account = make_account()
        fake_gateway.mailboxes["token-a"] = alerts
        orchestrator.sync_all("user-1")

        first = orchestrator.reprocess_all("user-1")
        second = orchestrator.reprocess_all("user-1")

        assert first.transactions_applied == 3
        assert second.transactions_applied == 3
        assert _balance(db_session, account.id) == Decimal("10800")
        entries = LedgerTransactionRepository(db_session)
        assert len(entries.get_for_account(account.id, active_only=True)) == 3
        assert len(fake_gateway.list_calls) == 1

    def test_reprocess_picks_up_manually_created_account(
        self,
        db_session: Session,
        orchestrator: SyncOrchestrator,
        fake_gateway,
        alerts: list[MailMessage],
        make_integration: Callable[..., MailIntegration],
        make_account: Callable[..., FinancialAccount],
    ) -> None:
        make_integration()
        fake_gateway.mailboxes["token-a"] = alerts[:2]
        orchestrator.sync_all("user-1")
        account = make_account()

        result = orchestrator.reprocess_all("user-1")

        assert result.transactions_applied == 2
        assert _balance(db_session, account.id) == Decimal("9200")

    def test_manually_applied_row_survives_reprocess(
        self,
        db_session: Session,
        orchestrator: SyncOrchestrator,
        fake_gateway,
        make_mail: Callable[..., MailMessage],
        make_integration: Callable[..., MailIntegration],
        make_account: Callable[..., FinancialAccount],
    ) -> None:
        """Test a low-confidence row the user applied stays applied after reprocessing."""
        integration = make_integration()
        account = make_account("SBI Bank XX123")
        fake_gateway.mailboxes["token-a"] = [
            make_mail(
                "m1",
                "Your A/c XX123 debited by Rs.500.00 by transfer.",
                datetime(2025, 1, 12),
            )
        ]
        orchestrator.sync_all("user-1")
        parsed = ParsedTransactionRepository(db_session).get_pending(integration.id)[0]
        orchestrator.apply_parsed_transaction(parsed.id)

        first = orchestrator.reprocess_all("user-1")
        second = orchestrator.reprocess_all("user-1")

        assert first.transactions_applied == 1
        assert second.transactions_applied == 1
        assert first.needs_review == 0
        assert _balance(db_session, account.id) == Decimal("9500")
        parsed = ParsedTransactionRepository(db_session).get(parsed.id)
        assert parsed.status == "processed"
        assert parsed.manually_applied is True

    def test_reprocess_without_integrations(self, orchestrator: SyncOrchestrator) -> None:
        assert [e.kind for e in orchestrator.reprocess_all("nobody").errors] == ["no_integrations"]


class TestReviewActions:
    """Tests for editing, applying and rejecting single rows."""

    @pytest.fixture
    def synced(
        self,
        orchestrator: SyncOrchestrator,
        fake_gateway,
        alerts: list[MailMessage],
        make_integration: Callable[..., MailIntegration],
        make_account: Callable[..., FinancialAccount],
    ) -> tuple[MailIntegration, FinancialAccount]:
        integration = make_integration()
        account = make_account()
        fake_gateway.mailboxes["token-a"] = alerts
        orchestrator.sync_all("user-1")
        return integration, account

    def test_update_processed_row_applies_net_delta(
        self,
        db_session: Session,
        orchestrator: SyncOrchestrator,
        synced: tuple[MailIntegration, FinancialAccount],
    ) -> None:
        integration, account = synced
        first = ParsedTransactionRepository(db_session).get_by_integration(integration.id)[0]

        updated = orchestrator.update_parsed_transaction(first.id, amount=Decimal("700"))

        assert updated.amount == Decimal("700")
        assert updated.status == "processed"
        assert _balance(db_session, account.id) == Decimal("10600")

    def test_update_pending_row_edits_in_place(
        self,
        db_session: Session,
        orchestrator: SyncOrchestrator,
        make_integration: Callable[..., MailIntegration],
        make_parsed,
    ) -> None:
        integration = make_integration()
        parsed = make_parsed(integration.id, "m1", Decimal("500"))
        db_session.commit()

        updated = orchestrator.update_parsed_transaction(parsed.id, direction="credit")

        assert updated.direction == "credit"
        assert updated.status == "pending"

    def test_update_rejects_invalid_values(
        self,
        db_session: Session,
        orchestrator: SyncOrchestrator,
        synced: tuple[MailIntegration, FinancialAccount],
    ) -> None:
        integration, _ = synced
        first = ParsedTransactionRepository(db_session).get_by_integration(integration.id)[0]

        with pytest.raises(ValueError):
            orchestrator.update_parsed_transaction(first.id, direction="sideways")
        with pytest.raises(ValueError):
            orchestrator.update_parsed_transaction(first.id, amount=Decimal("-1"))

    def test_reject_processed_row_fails(
        self,
        db_session: Session,
        orchestrator: SyncOrchestrator,
        synced: tuple[MailIntegration, FinancialAccount],
    ) -> None:
        integration, _ = synced
        first = ParsedTransactionRepository(db_session).get_by_integration(integration.id)[0]

        with pytest.raises(LedgerInvariantError):
            orchestrator.reject_parsed_transaction(first.id)

    def test_apply_processed_row_is_noop(
        self,
        db_session: Session,
        orchestrator: SyncOrchestrator,
        synced: tuple[MailIntegration, FinancialAccount],
    ) -> None:
        integration, account = synced
        first = ParsedTransactionRepository(db_session).get_by_integration(integration.id)[0]

        result = orchestrator.apply_parsed_transaction(first.id)

        assert result.already_applied is True
        assert _balance(db_session, account.id) == Decimal("10800")

    def test_rejected_row_cannot_be_updated(
        self,
        db_session: Session,
        orchestrator: SyncOrchestrator,
        make_integration: Callable[..., MailIntegration],
        make_parsed,
    ) -> None:
        integration = make_integration()
        parsed = make_parsed(integration.id, "m1", Decimal("500"))
        db_session.commit()
        orchestrator.reject_parsed_transaction(parsed.id)

        with pytest.raises(LedgerInvariantError):
            orchestrator.update_parsed_transaction(parsed.id, amount=Decimal("10"))

    def test_watermark_reset(
        self,
        orchestrator: SyncOrchestrator,
        make_integration: Callable[..., MailIntegration],
    ) -> None:
        integration = make_integration(last_synced_at=datetime(2025, 1, 1))

        orchestrator.reset_watermark(integration.id)

        assert integration.last_synced_at is None

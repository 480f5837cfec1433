"""Mail sync script with ingestion reporting."""

import argparse
import logging

from sqlalchemy.orm import Session

from xpend_api.core.config import settings
from xpend_api.db.session import SessionLocal
from xpend_api.repositories.discovered_account_repository import (
    DiscoveredAccountRepository,
)
from xpend_api.repositories.financial_account_repository import (
    FinancialAccountRepository,
)
from xpend_api.services.mail_gateway import TokenCipher, build_gateways
from xpend_api.services.sync_orchestrator import SyncOrchestrator, SyncResult


def print_sync_report(result: SyncResult, title: str) -> None:
    """Print totals, per-integration counters and errors of a run."""
    print()
    print("=" * 60)
    print(f"=== {title} ===")
    print()
    print(f"Transactions ingested: {result.transactions_ingested}")
    print(f"Transactions applied: {result.transactions_applied}")
    print(f"Accounts discovered: {result.accounts_discovered}")
    print(f"Messages skipped: {result.messages_skipped}")
    print(f"Needs review: {result.needs_review}")
    print()

    if result.integrations:
        print("Integrations:")
        print("-" * 40)
        for summary in result.integrations:
            print(
                f"  {summary.email_address} [{summary.status}]: "
                f"{summary.transactions_ingested} ingested, "
                f"{summary.transactions_applied} applied, "
                f"{summary.messages_skipped} skipped"
            )
        print()

    if result.warnings:
        print("Warnings:")
        for warning in result.warnings:
            print(f"  {warning}")
        print()

    if result.errors:
        print("Errors:")
        for error in result.errors:
            target = error.email_address or "-"
            print(f"  {target} ({error.kind}): {error.message}")
        print()


def print_account_report(db: Session, user_id: str) -> None:
    """Print the user's balances and pending discoveries."""
    accounts = FinancialAccountRepository(db).get_for_user(user_id)
    pending = DiscoveredAccountRepository(db).get_for_user(user_id, status="pending")

    if accounts:
        print("Accounts:")
        print("-" * 40)
        for account in accounts:
            print(f"  {account.display_name} ({account.account_type}): {account.current_balance}")
        print()

    if pending:
        print("Discovered accounts awaiting approval:")
        print("-" * 40)
        for discovered in pending:
            print(
                f"  #{discovered.id} {discovered.display_name} "
                f"(seen {discovered.sighting_count}x, confidence {discovered.confidence_score})"
            )
        print()


def run_sync(
    user_id: str,
    reprocess: bool = False,
    reset_watermark: int | None = None,
) -> SyncResult:
    """Run one sync or reprocess cycle.

    Args:
        user_id: User whose mailboxes are processed.
        reprocess: Undo and re-apply stored rows instead of fetching mail.
        reset_watermark: Integration ID whose watermark is cleared first.

    Returns:
        The SyncResult of the run.
    """
    db = SessionLocal()
    try:
        gateways = build_gateways(settings)
        cipher = None if reprocess else TokenCipher(settings.token_encryption_key)
        orchestrator = SyncOrchestrator(db, gateways, cipher=cipher, settings=settings)

        if reset_watermark is not None:
            orchestrator.reset_watermark(reset_watermark)
            print(f"Watermark cleared for integration {reset_watermark}")

        if reprocess:
            result = orchestrator.reprocess_all(user_id)
            print_sync_report(result, "Reprocess Report")
        else:
            result = orchestrator.sync_all(user_id)
            print_sync_report(result, "Mail Sync Report")

        print_account_report(db, user_id)
        return result
    finally:
        db.close()


def main() -> None:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Sync transaction emails into account balances"
    )
    parser.add_argument(
        "--user-id",
        required=True,
        help="User whose mailboxes are synced",
    )
    parser.add_argument(
        "--reprocess",
        action="store_true",
        help="Re-apply stored parsed transactions instead of fetching mail",
    )
    parser.add_argument(
        "--reset-watermark",
        type=int,
        default=None,
        metavar="INTEGRATION_ID",
        help="Clear an integration's watermark before running",
    )

    args = parser.parse_args()

    logging.basicConfig(level=settings.log_level.upper())
    result = run_sync(
        user_id=args.user_id,
        reprocess=args.reprocess,
        reset_watermark=args.reset_watermark,
    )
    if not result.success:
        raise SystemExit(1)


if __name__ == "__main__":
    main()

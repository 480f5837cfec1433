"""ReconciliationLedger: applies parsed transactions to account balances.

Every balance change is a single locked read-modify-write on the account
row, recorded as a LedgerTransaction in the caller's session together with
the ParsedTransaction status change. Nothing here commits; callers commit
the status transition and the balance mutation as one unit.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from sqlalchemy.orm import Session

from xpend_api.models.financial_account import FinancialAccount, signed_delta
from xpend_api.models.ledger_transaction import LedgerTransaction
from xpend_api.models.parsed_transaction import ParsedTransaction
from xpend_api.repositories.financial_account_repository import (
    FinancialAccountRepository,
)
from xpend_api.repositories.ledger_transaction_repository import (
    LedgerTransactionRepository,
)
from xpend_api.repositories.parsed_transaction_repository import (
    ParsedTransactionRepository,
)
from xpend_api.services.account_resolver import AccountResolver

logger = logging.getLogger(__name__)

DEFAULT_BALANCE_FLOOR = Decimal("-1000000")


def _institution_of(account_fingerprint: str) -> str | None:
    """Institution part of a verbatim fingerprint like 'SBI Bank XX1234'."""
    head, _, _ = account_fingerprint.strip().rpartition(" ")
    return head or None


class LedgerInvariantError(Exception):
    """Raised on ledger misuse: applying rejected rows, double reversal, etc."""

    pass


@dataclass
class ApplyResult:
    """Outcome of applying one parsed transaction.

    ``ledger_transaction_id`` is None when the account is still unknown and
    a discovery was staged instead.
    """

    parsed_transaction_id: int
    ledger_transaction_id: int | None = None
    account_id: int | None = None
    discovered_account_id: int | None = None
    newly_discovered: bool = False
    warning: str | None = None
    already_applied: bool = False

    @property
    def applied(self) -> bool:
        return self.ledger_transaction_id is not None


class ReconciliationLedger:
    """Exactly-once application of parsed transactions to balances."""

    def __init__(
        self,
        session: Session,
        resolver: AccountResolver | None = None,
        balance_floor: Decimal = DEFAULT_BALANCE_FLOOR,
    ) -> None:
        """Initialize the ledger.

        Args:
            session: SQLAlchemy database session.
            resolver: Account resolver (built from the session if omitted).
            balance_floor: Non-credit balances below this raise a warning.
        """
        self._session = session
        self._resolver = resolver or AccountResolver(session)
        self._balance_floor = balance_floor
        self._accounts = FinancialAccountRepository(session)
        self._entries = LedgerTransactionRepository(session)
        self._parsed = ParsedTransactionRepository(session)

    def _mutate_balance(self, account_id: int, delta: Decimal) -> tuple[FinancialAccount, str | None]:
        """Add a delta to an account balance under a row lock.

        Returns:
            The account and a floor warning, if the new balance breaches it.
        """
        account = self._accounts.get_for_update(account_id)
        account.current_balance = account.current_balance + delta
        warning = None
        if not account.is_credit_type and account.current_balance < self._balance_floor:
            warning = (
                f"Balance of account {account.id} ({account.display_name}) is "
                f"{account.current_balance}, below the floor of {self._balance_floor}"
            )
            logger.warning("Balance floor breached: %s", warning)
        self._session.flush()
        return account, warning

    def apply(
        self,
        parsed: ParsedTransaction,
        user_id: str | None = None,
        count_sighting: bool = True,
    ) -> ApplyResult:
        """Apply a parsed transaction to its account at most once.

        Processed rows return their existing ledger transaction without any
        balance change. Rows whose fingerprint matches no account stage a
        discovery and stay pending.

        Args:
            parsed: The parsed transaction.
            user_id: Owning user (defaults to the integration's owner).
            count_sighting: Whether an unmatched fingerprint counts as a new
                sighting of its discovery (False when retrying old rows).

        Returns:
            ApplyResult describing what happened.

        Raises:
            LedgerInvariantError: If the row is rejected.
            AmbiguousAccountError: If the fingerprint matches several accounts.
        """
        if parsed.status == "processed":
            return ApplyResult(
                parsed_transaction_id=parsed.id,
                ledger_transaction_id=parsed.ledger_transaction_id,
                already_applied=True,
            )
        if parsed.status == "rejected":
            raise LedgerInvariantError(f"Parsed transaction {parsed.id} is rejected")

        resolution = self._resolver.resolve(
            user_id=user_id or parsed.mail_integration.user_id,
            mail_integration_id=parsed.mail_integration_id,
            raw_fingerprint=parsed.account_fingerprint,
            institution=_institution_of(parsed.account_fingerprint),
            account_type=parsed.account_type or "bank",
            confidence_score=parsed.confidence_score,
            reported_balance=parsed.reported_balance,
            balance_as_of=parsed.occurred_at if parsed.reported_balance is not None else None,
            source_message_id=parsed.source_message_id,
            count_sighting=count_sighting,
        )
        if not resolution.is_resolved:
            discovered = resolution.discovered_account
            return ApplyResult(
                parsed_transaction_id=parsed.id,
                discovered_account_id=discovered.id if discovered else None,
                newly_discovered=resolution.newly_discovered,
            )

        account_id = resolution.account_id
        account = self._accounts.get(account_id)
        delta = signed_delta(account.account_type, parsed.direction, parsed.amount)
        account, warning = self._mutate_balance(account_id, delta)
        entry = self._entries.create(
            financial_account_id=account.id,
            parsed_transaction_id=parsed.id,
            direction=parsed.direction,
            amount=parsed.amount,
            signed_delta=delta,
            balance_after=account.current_balance,
            kind="apply",
            warning=warning,
        )
        self._parsed.mark_processed(parsed.id, entry.id, datetime.utcnow())
        logger.debug(
            "Applied parsed transaction %d to account %d (delta %s)",
            parsed.id,
            account.id,
            delta,
        )
        return ApplyResult(
            parsed_transaction_id=parsed.id,
            ledger_transaction_id=entry.id,
            account_id=account.id,
            warning=warning,
        )

    def _active_entry(self, ledger_id: int) -> LedgerTransaction:
        entry = self._session.get(LedgerTransaction, ledger_id)
        if entry is None:
            raise LedgerInvariantError(f"Ledger transaction {ledger_id} does not exist")
        if not entry.is_active:
            raise LedgerInvariantError(f"Ledger transaction {ledger_id} is no longer active")
        return entry

    def reverse(self, ledger_id: int) -> ParsedTransaction | None:
        """Undo an active ledger transaction and return its row to pending.

        Returns:
            The originating ParsedTransaction, if it still exists.

        Raises:
            LedgerInvariantError: If the ledger row is missing or inactive.
        """
        entry = self._active_entry(ledger_id)
        account, _ = self._mutate_balance(entry.financial_account_id, -entry.signed_delta)
        self._entries.deactivate(entry.id, reversed_at=datetime.utcnow())
        logger.debug("Reversed ledger transaction %d on account %d", entry.id, account.id)

        if entry.parsed_transaction_id is None:
            return None
        return self._parsed.reset_to_pending(entry.parsed_transaction_id)

    def apply_update(self, ledger_id: int, new_amount: Decimal, new_direction: str) -> int:
        """Change the amount or direction of an applied transaction.

        Only the net difference (new signed delta minus old) is applied, in a
        single balance mutation. The old ledger row is superseded by a new
        ``update`` row.

        Returns:
            ID of the new ledger transaction.

        Raises:
            LedgerInvariantError: If the ledger row is missing or inactive.
            ValueError: If the amount is not positive or the direction unknown.
        """
        if new_amount <= 0:
            raise ValueError("Transaction amount must be positive")
        entry = self._active_entry(ledger_id)
        account = self._accounts.get(entry.financial_account_id)
        new_delta = signed_delta(account.account_type, new_direction, new_amount)
        account, warning = self._mutate_balance(account.id, new_delta - entry.signed_delta)

        self._entries.deactivate(entry.id)
        replacement = self._entries.create(
            financial_account_id=account.id,
            parsed_transaction_id=entry.parsed_transaction_id,
            direction=new_direction,
            amount=new_amount,
            signed_delta=new_delta,
            balance_after=account.current_balance,
            kind="update",
            supersedes_id=entry.id,
            warning=warning,
        )

        if entry.parsed_transaction_id is not None:
            parsed = self._parsed.get(entry.parsed_transaction_id)
            parsed.amount = new_amount
            parsed.direction = new_direction
            parsed.ledger_transaction_id = replacement.id
        logger.debug(
            "Updated ledger transaction %d -> %d (net %s)",
            entry.id,
            replacement.id,
            new_delta - entry.signed_delta,
        )
        return replacement.id

    def reject(self, parsed: ParsedTransaction) -> ParsedTransaction:
        """Reject a pending parsed transaction (no balance effect).

        Raises:
            LedgerInvariantError: If the row is not pending.
        """
        if parsed.status != "pending":
            raise LedgerInvariantError(
                f"Only pending transactions can be rejected; {parsed.id} is {parsed.status}"
            )
        return self._parsed.mark_rejected(parsed.id, datetime.utcnow())

"""AccountResolver: maps account fingerprints to financial accounts."""

import logging
import re
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from sqlalchemy.orm import Session

from xpend_api.models.discovered_account import DiscoveredAccount
from xpend_api.models.financial_account import FinancialAccount, signed_delta
from xpend_api.repositories.discovered_account_repository import (
    DiscoveredAccountRepository,
)
from xpend_api.repositories.financial_account_repository import (
    FinancialAccountRepository,
)
from xpend_api.repositories.parsed_transaction_repository import (
    ParsedTransactionRepository,
)

logger = logging.getLogger(__name__)

# Account-indicator words that carry no identity
FILLER_WORDS = frozenset(
    {"a/c", "ac", "acct", "account", "no", "no.", "number", "ending", "in", "with", "xx"}
)
MASK_TOKEN = re.compile(r"^[x*#.\-]+$")
TOKEN_PUNCTUATION = ":;,()[]"


class AmbiguousAccountError(Exception):
    """Raised when a fingerprint matches more than one account."""

    def __init__(self, fingerprint: str, account_ids: list[int]) -> None:
        self.fingerprint = fingerprint
        self.account_ids = account_ids
        super().__init__(
            f"Fingerprint '{fingerprint}' matches accounts {account_ids}; "
            "resolve manually"
        )


class DiscoveredAccountStateError(Exception):
    """Raised when a review action is not allowed in the current status."""

    pass


@dataclass(frozen=True)
class NormalizedFingerprint:
    """Institution name plus account suffix, the unit of account matching."""

    institution: str
    last4: str

    @property
    def key(self) -> str:
        return f"{self.institution}|{self.last4}"


def normalize_fingerprint(raw: str) -> NormalizedFingerprint:
    """Normalize a raw fingerprint such as 'SBI Bank ****1234'.

    Case-folds, collapses whitespace, keeps the last four digits of the final
    digit run and the institution words, dropping masks, filler words and
    digits. Equal accounts written differently normalize to the same key:

        >>> normalize_fingerprint("SBI  Bank A/c XX1234").key
        'sbi bank|1234'
    """
    text = " ".join((raw or "").casefold().split())
    digit_runs = re.findall(r"\d+", text)
    last4 = digit_runs[-1][-4:] if digit_runs else ""

    words = []
    for token in text.split():
        token = token.strip(TOKEN_PUNCTUATION)
        if not token or any(ch.isdigit() for ch in token):
            continue
        if token in FILLER_WORDS or MASK_TOKEN.match(token):
            continue
        words.append(token)
    return NormalizedFingerprint(institution=" ".join(words), last4=last4)


@dataclass
class Resolution:
    """Outcome of resolving one fingerprint."""

    fingerprint: NormalizedFingerprint
    account_id: int | None = None
    discovered_account: DiscoveredAccount | None = None
    newly_discovered: bool = False

    @property
    def is_resolved(self) -> bool:
        return self.account_id is not None


class AccountResolver:
    """Matches fingerprints against accounts and stages discoveries.

    Approving a discovery is the only way mail data creates a
    FinancialAccount. All changes are flushed, never committed.
    """

    def __init__(self, session: Session) -> None:
        """Initialize the resolver with a database session.

        Args:
            session: SQLAlchemy database session.
        """
        self._accounts = FinancialAccountRepository(session)
        self._discovered = DiscoveredAccountRepository(session)
        self._parsed = ParsedTransactionRepository(session)

    def match(self, user_id: str, raw_fingerprint: str) -> int | None:
        """Find the single active account carrying a fingerprint.

        Returns:
            The account ID, or None when nothing matches.

        Raises:
            AmbiguousAccountError: If several accounts match.
        """
        fingerprint = normalize_fingerprint(raw_fingerprint)
        matches = self._accounts.find_by_fingerprint(user_id, fingerprint.key)
        if len(matches) > 1:
            raise AmbiguousAccountError(fingerprint.key, [a.id for a in matches])
        return matches[0].id if matches else None

    def resolve(
        self,
        user_id: str,
        mail_integration_id: int,
        raw_fingerprint: str,
        institution: str | None = None,
        account_type: str = "bank",
        confidence_score: Decimal = Decimal("0"),
        reported_balance: Decimal | None = None,
        balance_as_of: datetime | None = None,
        source_message_id: str | None = None,
        count_sighting: bool = True,
    ) -> Resolution:
        """Resolve a fingerprint to an account, or stage it for approval.

        Args:
            user_id: Owning user ID.
            mail_integration_id: Integration the sighting came from.
            raw_fingerprint: Verbatim fingerprint from the email.
            institution: Display name of the institution, if known.
            account_type: Account type inferred by the parser.
            confidence_score: Parser confidence of the sighting.
            reported_balance: Balance quoted in the email, if any.
            balance_as_of: When the quoted balance was true.
            source_message_id: Message the sighting came from.
            count_sighting: False when re-resolving a row already counted.

        Returns:
            Resolution with either an account ID or a discovered account.

        Raises:
            AmbiguousAccountError: If several accounts match.
        """
        fingerprint = normalize_fingerprint(raw_fingerprint)
        account_id = self.match(user_id, raw_fingerprint)
        if account_id is not None:
            return Resolution(fingerprint=fingerprint, account_id=account_id)

        discovered = self._discovered.get_by_fingerprint(mail_integration_id, fingerprint.key)
        if discovered is None:
            discovered = self._discovered.create(
                mail_integration_id=mail_integration_id,
                institution=institution or fingerprint.institution.title() or "Unknown",
                normalized_fingerprint=fingerprint.key,
                confidence_score=confidence_score,
                account_type=account_type,
                account_number_partial=fingerprint.last4 or None,
                reported_balance=reported_balance,
                balance_as_of=balance_as_of,
                source_message_id=source_message_id,
            )
            logger.info(
                "Discovered account %s (integration %d)",
                fingerprint.key,
                mail_integration_id,
            )
            return Resolution(
                fingerprint=fingerprint, discovered_account=discovered, newly_discovered=True
            )

        if discovered.status == "approved":
            # Its account was deactivated or removed since approval.
            logger.info("Reopening approved discovery %d: account gone", discovered.id)
            self._discovered.update_status(discovered.id, "pending")
        if not count_sighting:
            return Resolution(fingerprint=fingerprint, discovered_account=discovered)

        if discovered.status == "rejected" and account_type != discovered.account_type:
            logger.info(
                "Reopening rejected discovery %d: account type %s -> %s",
                discovered.id,
                discovered.account_type,
                account_type,
            )
            discovered.account_type = account_type
            self._discovered.update_status(discovered.id, "pending")

        self._discovered.record_sighting(
            discovered.id,
            confidence_score=confidence_score,
            reported_balance=reported_balance,
            balance_as_of=balance_as_of,
        )
        return Resolution(fingerprint=fingerprint, discovered_account=discovered)

    def approve(
        self,
        discovered_id: int,
        display_name: str | None = None,
        account_type: str | None = None,
        processed_at: datetime | None = None,
    ) -> FinancialAccount:
        """Materialize a discovered account.

        The opening balance is chosen so that applying the still-pending
        transactions dated at or before the balance snapshot lands on the
        reported balance. Without a reported balance it is zero. If an
        active account already carries the fingerprint, the discovery is
        linked to it instead of creating a duplicate.

        Raises:
            DiscoveredAccountNotFoundError: If the discovery doesn't exist.
            DiscoveredAccountStateError: If the discovery was rejected.
        """
        discovered = self._discovered.get(discovered_id)
        if discovered.status == "rejected":
            raise DiscoveredAccountStateError(
                f"Discovered account {discovered_id} was rejected"
            )
        if discovered.status == "approved" and discovered.financial_account_id is not None:
            if self._accounts.exists_active(discovered.financial_account_id):
                return self._accounts.get(discovered.financial_account_id)

        if account_type is not None:
            discovered.account_type = account_type
        user_id = discovered.mail_integration.user_id
        key = discovered.normalized_fingerprint

        existing = self._accounts.find_by_fingerprint(user_id, key)
        if len(existing) > 1:
            raise AmbiguousAccountError(key, [a.id for a in existing])
        if existing:
            account = existing[0]
        else:
            opening_balance = self.infer_opening_balance(discovered)
            discovered.inferred_opening_balance = opening_balance
            account = self._accounts.create(
                user_id=user_id,
                account_type=discovered.account_type,
                display_name=display_name or discovered.display_name,
                opening_balance=opening_balance,
                institution=discovered.institution,
                account_number_partial=discovered.account_number_partial,
                fingerprints=[key],
            )

        self._discovered.update_status(
            discovered.id,
            "approved",
            financial_account_id=account.id,
            processed_at=processed_at or datetime.utcnow(),
        )
        logger.info("Approved discovered account %d as account %d", discovered.id, account.id)
        return account

    def infer_opening_balance(self, discovered: DiscoveredAccount) -> Decimal:
        """Reported balance minus the effect of pending transactions up to the snapshot."""
        if discovered.reported_balance is None:
            return Decimal("0")
        pending = self._parsed.get_pending_by_fingerprint(
            discovered.mail_integration_id, discovered.normalized_fingerprint
        )
        effect = sum(
            (
                signed_delta(discovered.account_type, p.direction, p.amount)
                for p in pending
                if discovered.balance_as_of is None or p.occurred_at <= discovered.balance_as_of
            ),
            Decimal("0"),
        )
        return discovered.reported_balance - effect

    def reject(self, discovered_id: int, processed_at: datetime | None = None) -> DiscoveredAccount:
        """Reject a discovery. Terminal; no ledger effect.

        Raises:
            DiscoveredAccountNotFoundError: If the discovery doesn't exist.
            DiscoveredAccountStateError: If it was already approved.
        """
        discovered = self._discovered.get(discovered_id)
        if discovered.status == "rejected":
            return discovered
        if discovered.status == "approved":
            raise DiscoveredAccountStateError(
                f"Discovered account {discovered_id} is already approved"
            )
        return self._discovered.update_status(
            discovered.id, "rejected", processed_at=processed_at or datetime.utcnow()
        )

    def reset(self, discovered_id: int) -> DiscoveredAccount:
        """Return a discovery to pending, dropping its account link."""
        discovered = self._discovered.get(discovered_id)
        discovered.inferred_opening_balance = None
        return self._discovered.update_status(discovered.id, "pending")

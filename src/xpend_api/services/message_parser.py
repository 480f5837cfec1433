"""MessageParser: turns bank alert emails into transaction candidates.

Parsing is driven by an ordered table of ``ParsingRule`` records. Each rule
has a rule-engine ``match_expression`` evaluated against the message's
``sender``, ``subject`` and ``body``; the first rule that matches owns the
message, and its regex extractors recover the amount, direction, account
token, date, description and reported balance. New providers are added as
rule data (see ``load_parsing_rules``), not code.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any

import rule_engine  # type: ignore[import-untyped]

from xpend_api.core.config import Settings
from xpend_api.services.mail_gateway import MailMessage

logger = logging.getLogger(__name__)

AMOUNT_WEIGHT = Decimal("0.3")
DIRECTION_WEIGHT = Decimal("0.3")
ACCOUNT_WEIGHT = Decimal("0.3")
DATE_WEIGHT = Decimal("0.1")

CREDIT_CARD_HINT = re.compile(r"(?i)\bcredit\s+card\b")

PROMOTIONAL_PATTERNS: tuple[str, ...] = (
    r"(?i)special\s+offer",
    r"(?i)limited\s+time\s+offer",
    r"(?i)discount\s+offer",
    r"(?i)cashback\s+offer",
    r"(?i)bonus\s+points",
    r"(?i)win\s+prizes?",
    r"(?i)congratulations.*won",
    r"(?i)exclusive\s+deal",
    r"(?i)claim\s+your\s+reward",
    r"(?i)apply\s+now",
    r"(?i)upgrade\s+your",
)

AMOUNT_PATTERNS: tuple[str, ...] = (
    r"(?i)(?:\brs\.?|\binr|₹)\s*([\d,]+(?:\.\d{1,2})?)",
    r"(?i)([\d,]+(?:\.\d{1,2})?)\s*(?:rs\b\.?|inr\b|₹)",
)

BALANCE_PATTERNS: tuple[str, ...] = (
    r"(?i)(?:avl\.?|available)\s+bal(?:ance)?\.?\s*(?:is\s*)?:?\s*(?:rs\.?|inr|₹)\s*([\d,]+(?:\.\d{1,2})?)",
)

RULE_CONTEXT = rule_engine.Context(
    type_resolver=rule_engine.type_resolver_from_dict(
        {
            "sender": rule_engine.DataType.STRING,
            "subject": rule_engine.DataType.STRING,
            "body": rule_engine.DataType.STRING,
        }
    )
)


@dataclass(frozen=True)
class DatePattern:
    """A regex whose first group is parsed with ``strptime(fmt)``."""

    pattern: str
    fmt: str


@dataclass(frozen=True)
class ParsingRule:
    """Declarative description of one provider's alert format."""

    name: str
    institution: str
    match_expression: str
    account_type: str = "bank"
    currency: str = "INR"
    amount_patterns: tuple[str, ...] = AMOUNT_PATTERNS
    debit_patterns: tuple[str, ...] = ()
    credit_patterns: tuple[str, ...] = ()
    account_patterns: tuple[str, ...] = ()
    date_patterns: tuple[DatePattern, ...] = ()
    description_patterns: tuple[str, ...] = ()
    balance_patterns: tuple[str, ...] = BALANCE_PATTERNS
    institution_patterns: tuple[str, ...] = ()
    exclude_patterns: tuple[str, ...] = PROMOTIONAL_PATTERNS

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ParsingRule":
        """Build a rule from its JSON form.

        List-valued keys are optional and fall back to the shared defaults.
        ``date_patterns`` entries are ``{"pattern": ..., "format": ...}``
        objects or ``[pattern, format]`` pairs.

        Raises:
            ValueError: If a required key is missing.
        """
        missing = [k for k in ("name", "institution", "match_expression") if k not in data]
        if missing:
            raise ValueError(f"Parsing rule is missing keys: {', '.join(missing)}")

        date_patterns = []
        for entry in data.get("date_patterns", []):
            if isinstance(entry, dict):
                date_patterns.append(DatePattern(entry["pattern"], entry["format"]))
            else:
                pattern, fmt = entry
                date_patterns.append(DatePattern(pattern, fmt))

        def patterns(key: str, default: tuple[str, ...] = ()) -> tuple[str, ...]:
            return tuple(data[key]) if key in data else default

        return cls(
            name=data["name"],
            institution=data["institution"],
            match_expression=data["match_expression"],
            account_type=data.get("account_type", "bank"),
            currency=data.get("currency", "INR"),
            amount_patterns=patterns("amount_patterns", AMOUNT_PATTERNS),
            debit_patterns=patterns("debit_patterns"),
            credit_patterns=patterns("credit_patterns"),
            account_patterns=patterns("account_patterns"),
            date_patterns=tuple(date_patterns),
            description_patterns=patterns("description_patterns"),
            balance_patterns=patterns("balance_patterns", BALANCE_PATTERNS),
            institution_patterns=patterns("institution_patterns"),
            exclude_patterns=patterns("exclude_patterns", PROMOTIONAL_PATTERNS),
        )


DEFAULT_PARSING_RULES: tuple[ParsingRule, ...] = (
    ParsingRule(
        name="hdfc_bank_alert",
        institution="HDFC Bank",
        match_expression='sender =~ "(?i).*hdfc.*"',
        account_type="savings",
        debit_patterns=(r"(?i)has\s+been\s+debited|debited\s+from",),
        credit_patterns=(r"(?i)has\s+been\s+credited|credited\s+to",),
        account_patterns=(
            r"(?i)(?:from|to|in)\s+(?:your\s+)?(?:a/c|account)\s+(?:no\.?\s*)?([x*]*\d{4})\b",
            r"(?i)a/c\s*(?:no\.?\s*)?([x*]+\d{4})\b",
        ),
        date_patterns=(
            DatePattern(r"(?i)\bon\s+(\d{2}-\d{2}-\d{2})\b", "%d-%m-%y"),
            DatePattern(r"(?i)\bon\s+(\d{2}-\d{2}-\d{4})\b", "%d-%m-%Y"),
        ),
        description_patterns=(
            r"((?:[Tt]o|[Bb]y)\s+(?:VPA|vpa)\s+\S+(?:\s+[A-Z][A-Z ]*[A-Z])?)",
            r"(?i)(upi\s+transaction\s+reference\s+number\s+is\s+\d+)",
        ),
    ),
    ParsingRule(
        name="axis_bank_alert",
        institution="Axis Bank",
        match_expression='sender =~ "(?i).*axis.*"',
        debit_patterns=(r"(?i)amount\s+debited|\bdebited\b",),
        credit_patterns=(r"(?i)amount\s+credited|\bcredited\b",),
        account_patterns=(
            r"(?i)account\s+number:?\s*([x*]+\d{4})\b",
            r"(?i)\b(xx\d{4})\b",
        ),
        date_patterns=(
            DatePattern(r"(?i)date\s*(?:&|and)\s*time:?\s*(\d{2}-\d{2}-\d{2})\b", "%d-%m-%y"),
            DatePattern(r"(?i)\bon\s+(\d{2}-\d{2}-\d{4})\b", "%d-%m-%Y"),
        ),
        description_patterns=(r"(?i)(upi/p2[ma]/\d+/[^/\s]+)",),
    ),
    ParsingRule(
        name="sbi_alert",
        institution="SBI Bank",
        match_expression='sender =~ "(?i).*(sbi|onlinesbi).*"',
        debit_patterns=(r"(?i)\bdebit(?:ed)?\b", r"(?i)\bwithdrawn\b"),
        credit_patterns=(r"(?i)\bcredit(?:ed)?\b", r"(?i)\bdeposited\b"),
        account_patterns=(
            r"(?i)a/c\s*(?:no\.?\s*)?([x*]+\d{3,4})\b",
            r"(?i)account\s+(?:no\.?\s*)?([x*]*\d{4})\b",
        ),
        date_patterns=(
            DatePattern(r"(?i)\bon\s+(\d{2}[a-z]{3}\d{2})\b", "%d%b%y"),
            DatePattern(r"(?i)\bon\s+(\d{2}-\d{2}-\d{4})\b", "%d-%m-%Y"),
            DatePattern(r"(?i)\bon\s+(\d{2}-\d{2}-\d{2})\b", "%d-%m-%y"),
        ),
        description_patterns=(r"(?i)\b(?:by|through)\s+(transfer|upi|neft|imps|atm|cheque)\b",),
    ),
    ParsingRule(
        name="icici_credit_card",
        institution="ICICI Bank",
        match_expression='sender =~ "(?i).*icici.*" and body =~ "(?is).*credit card.*"',
        account_type="credit_card",
        debit_patterns=(r"(?i)\bspent\b", r"(?i)\bused\s+for\b"),
        credit_patterns=(r"(?i)payment\s+of\s+.*\breceived\b", r"(?i)\brefund(?:ed)?\b", r"(?i)\bcredited\b"),
        account_patterns=(r"(?i)card\s+(?:ending\s+)?([x*]*\d{4})\b",),
        date_patterns=(
            DatePattern(r"(?i)\bon\s+(\d{2}-[a-z]{3}-\d{2})\b", "%d-%b-%y"),
            DatePattern(r"(?i)\bon\s+(\d{2}-[a-z]{3}-\d{4})\b", "%d-%b-%Y"),
        ),
        description_patterns=(r"(?i)\bat\s+([A-Za-z0-9&.\-' ]+?)(?:\.\s|\.$|\s+on\b|$)",),
        balance_patterns=(),
    ),
    ParsingRule(
        name="generic_bank_alert",
        institution="Unknown Bank",
        match_expression="true",
        debit_patterns=(r"(?i)\b(?:debited|spent|withdrawn|paid|charged)\b",),
        credit_patterns=(r"(?i)\b(?:credited|received|refunded|deposited)\b",),
        account_patterns=(
            r"(?i)(?:a/c|acct|account|card)\s*(?:no\.?|number|ending(?:\s+(?:in|with))?)?\s*:?\s*([x*]*\d{4})\b",
            r"(?i)\b([x*]{2,}\d{4})\b",
        ),
        date_patterns=(
            DatePattern(r"\b(\d{4}-\d{2}-\d{2})\b", "%Y-%m-%d"),
            DatePattern(r"\b(\d{2}-\d{2}-\d{4})\b", "%d-%m-%Y"),
            DatePattern(r"\b(\d{2}/\d{2}/\d{4})\b", "%d/%m/%Y"),
            DatePattern(r"(?i)\b(\d{2}-[a-z]{3}-\d{2})\b", "%d-%b-%y"),
        ),
        description_patterns=(r"(?i)\bat\s+([A-Za-z0-9&.\-' ]+?)(?:\.\s|\.$|\s+on\b|$)",),
        institution_patterns=(r"\b([A-Z][A-Za-z]+\s+Bank)\b",),
    ),
)


def load_parsing_rules(path: str | Path) -> tuple[ParsingRule, ...]:
    """Load an ordered rule table from a JSON file.

    The file holds either a list of rule objects or ``{"rules": [...]}``.

    Raises:
        ValueError: If the file does not describe a rule list.
    """
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    if isinstance(data, dict):
        data = data.get("rules")
    if not isinstance(data, list):
        raise ValueError(f"{path} does not contain a list of parsing rules")
    return tuple(ParsingRule.from_dict(entry) for entry in data)


@dataclass
class ParsedCandidate:
    """A transaction extracted from one message, before persistence."""

    source_message_id: str
    subject: str
    sender: str
    received_at: datetime
    amount: Decimal
    currency: str
    direction: str
    institution: str
    account_number_partial: str
    account_fingerprint: str
    account_type: str
    occurred_at: datetime
    description: str
    reported_balance: Decimal | None
    confidence_score: Decimal
    rule_name: str


@dataclass
class ParseBatchResult:
    """Candidates from a batch plus the number of messages yielding none."""

    candidates: list[ParsedCandidate] = field(default_factory=list)
    skipped: int = 0


@dataclass
class _CompiledRule:
    rule: ParsingRule
    matcher: rule_engine.Rule
    amount: list[re.Pattern[str]]
    debit: list[re.Pattern[str]]
    credit: list[re.Pattern[str]]
    account: list[re.Pattern[str]]
    dates: list[tuple[re.Pattern[str], str]]
    description: list[re.Pattern[str]]
    balance: list[re.Pattern[str]]
    institution: list[re.Pattern[str]]
    exclude: list[re.Pattern[str]]


def _first_group(patterns: list[re.Pattern[str]], text: str) -> str | None:
    for pattern in patterns:
        match = pattern.search(text)
        if match:
            value = match.group(1) if match.groups() else match.group(0)
            if value:
                return value.strip()
    return None


def _to_decimal(raw: str | None) -> Decimal | None:
    if not raw:
        return None
    try:
        return Decimal(raw.replace(",", ""))
    except InvalidOperation:
        return None


class MessageParser:
    """Applies the ordered rule table to raw messages.

    Parsing never raises for malformed input and depends only on the message
    and the rules, so the same message always yields the same candidate.
    """

    def __init__(self, rules: tuple[ParsingRule, ...] | list[ParsingRule] = DEFAULT_PARSING_RULES) -> None:
        """Compile the rule table.

        Rules whose expression or regexes fail to compile are logged and
        skipped.

        Args:
            rules: Ordered parsing rules; first match wins.
        """
        self._rules: list[_CompiledRule] = []
        for rule in rules:
            try:
                self._rules.append(self._compile(rule))
            except (rule_engine.RuleSyntaxError, re.error) as e:
                logger.warning("Failed to compile parsing rule '%s': %s", rule.name, e)

    @property
    def rule_names(self) -> list[str]:
        return [compiled.rule.name for compiled in self._rules]

    @staticmethod
    def _compile(rule: ParsingRule) -> _CompiledRule:
        def many(patterns: tuple[str, ...]) -> list[re.Pattern[str]]:
            return [re.compile(p) for p in patterns]

        return _CompiledRule(
            rule=rule,
            matcher=rule_engine.Rule(rule.match_expression, context=RULE_CONTEXT),
            amount=many(rule.amount_patterns),
            debit=many(rule.debit_patterns),
            credit=many(rule.credit_patterns),
            account=many(rule.account_patterns),
            dates=[(re.compile(d.pattern), d.fmt) for d in rule.date_patterns],
            description=many(rule.description_patterns),
            balance=many(rule.balance_patterns),
            institution=many(rule.institution_patterns),
            exclude=many(rule.exclude_patterns),
        )

    def _select_rule(self, message: MailMessage) -> _CompiledRule | None:
        context = {
            "sender": message.sender or "",
            "subject": message.subject or "",
            "body": message.body or "",
        }
        for compiled in self._rules:
            try:
                if compiled.matcher.matches(context):
                    return compiled
            except rule_engine.errors.EngineError as e:
                logger.debug("Rule '%s' failed to evaluate: %s", compiled.rule.name, e)
        return None

    def parse(self, message: MailMessage) -> ParsedCandidate | None:
        """Extract a transaction candidate from a message.

        Returns:
            The candidate, or None when the message is promotional,
            unrecognized, or lacks an amount, direction or account.
        """
        try:
            compiled = self._select_rule(message)
            if compiled is None:
                logger.debug("No parsing rule matched message %s", message.message_id)
                return None
            return self._extract(compiled, message)
        except (AttributeError, TypeError, ValueError) as e:
            logger.debug("Skipping unparseable message %s: %s", message.message_id, e)
            return None

    def _extract(self, compiled: _CompiledRule, message: MailMessage) -> ParsedCandidate | None:
        rule = compiled.rule
        subject = message.subject or ""
        body = message.body or ""
        text = f"{subject}\n{body}"

        if any(p.search(text) for p in compiled.exclude):
            logger.debug("Message %s looks promotional; skipped", message.message_id)
            return None

        amount = _to_decimal(_first_group(compiled.amount, body) or _first_group(compiled.amount, subject))
        if amount is None or amount <= 0:
            logger.debug("No amount in message %s (rule %s)", message.message_id, rule.name)
            return None

        direction = None
        if any(p.search(text) for p in compiled.debit):
            direction = "debit"
        elif any(p.search(text) for p in compiled.credit):
            direction = "credit"
        if direction is None:
            logger.debug("No direction in message %s (rule %s)", message.message_id, rule.name)
            return None

        account_token = _first_group(compiled.account, text)
        digits = re.findall(r"\d+", account_token or "")
        if not digits:
            logger.debug("No account in message %s (rule %s)", message.message_id, rule.name)
            return None
        last4 = digits[-1][-4:]

        institution = _first_group(compiled.institution, text) or rule.institution

        occurred_at = None
        for pattern, fmt in compiled.dates:
            match = pattern.search(body)
            if not match:
                continue
            try:
                occurred_at = datetime.strptime(match.group(1), fmt)
                break
            except ValueError:
                continue
        explicit_date = occurred_at is not None
        if occurred_at is None:
            occurred_at = message.received_at

        description = _first_group(compiled.description, body) or subject.strip()
        account_type = rule.account_type
        if account_type != "credit_card" and CREDIT_CARD_HINT.search(text):
            account_type = "credit_card"

        confidence = AMOUNT_WEIGHT + DIRECTION_WEIGHT
        if len(last4) == 4:
            confidence += ACCOUNT_WEIGHT
        if explicit_date:
            confidence += DATE_WEIGHT

        return ParsedCandidate(
            source_message_id=message.message_id,
            subject=subject[:500],
            sender=(message.sender or "")[:255],
            received_at=message.received_at,
            amount=amount,
            currency=rule.currency,
            direction=direction,
            institution=institution,
            account_number_partial=last4,
            account_fingerprint=f"{institution} {account_token}",
            account_type=account_type,
            occurred_at=occurred_at,
            description=description[:500],
            reported_balance=_to_decimal(_first_group(compiled.balance, body)),
            confidence_score=confidence,
            rule_name=rule.name,
        )

    def parse_batch(self, messages: list[MailMessage]) -> ParseBatchResult:
        """Parse several messages, counting those that yield no candidate."""
        result = ParseBatchResult()
        for message in messages:
            candidate = self.parse(message)
            if candidate is None:
                result.skipped += 1
            else:
                result.candidates.append(candidate)
        return result


def build_message_parser(settings: Settings) -> MessageParser:
    """Build a parser from the configured rule file, or the built-in table."""
    if settings.parsing_rules_path:
        logger.info("Loading parsing rules from %s", settings.parsing_rules_path)
        return MessageParser(load_parsing_rules(settings.parsing_rules_path))
    return MessageParser()

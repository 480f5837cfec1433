"""FinancialAccount model and its matching fingerprints."""

from datetime import datetime
from decimal import Decimal

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from xpend_api.db.base import Base

# Account types whose balance is outstanding debt (debit raises it)
CREDIT_ACCOUNT_TYPES = frozenset({"credit_card", "loan", "credit_line"})

ASSET_ACCOUNT_TYPES = frozenset(
    {"bank", "savings", "checking", "current", "wallet", "cash"}
)

ACCOUNT_TYPES = CREDIT_ACCOUNT_TYPES | ASSET_ACCOUNT_TYPES

DIRECTIONS = frozenset({"credit", "debit"})


def signed_delta(account_type: str, direction: str, amount: Decimal) -> Decimal:
    """Balance change of a transaction on an account of the given type.

    Asset accounts gain on credit and lose on debit. Credit-type accounts
    track debt, so a debit raises the balance and a credit lowers it.

    Raises:
        ValueError: If the direction is not credit or debit.
    """
    if direction not in DIRECTIONS:
        raise ValueError(f"Unknown transaction direction: {direction!r}")
    delta = amount if direction == "credit" else -amount
    if account_type in CREDIT_ACCOUNT_TYPES:
        delta = -delta
    return delta


class FinancialAccount(Base):
    """A user's bank, card, loan or asset account.

    ``current_balance`` is only mutated through the reconciliation ledger.
    For credit-type accounts it is the outstanding debt.
    """

    __tablename__ = "financial_accounts"
    __table_args__ = (
        Index("IX_financial_accounts_user_active", "user_id", "is_active"),
        {"schema": "finance"},
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    account_type: Mapped[str] = mapped_column(String(30), nullable=False)
    display_name: Mapped[str] = mapped_column(String(200), nullable=False)
    institution: Mapped[str | None] = mapped_column(String(200), nullable=True)
    account_number_partial: Mapped[str | None] = mapped_column(String(4), nullable=True)
    current_balance: Mapped[Decimal] = mapped_column(
        Numeric(19, 4), nullable=False, default=Decimal("0")
    )
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="INR")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=datetime.utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    # Relationships
    fingerprints: Mapped[list["FinancialAccountFingerprint"]] = relationship(
        "FinancialAccountFingerprint",
        back_populates="financial_account",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    @property
    def is_credit_type(self) -> bool:
        """Whether the balance represents debt (inverse polarity)."""
        return self.account_type in CREDIT_ACCOUNT_TYPES

    def __repr__(self) -> str:
        return (
            f"<FinancialAccount(id={self.id}, name='{self.display_name}', "
            f"type='{self.account_type}', balance={self.current_balance})>"
        )


class FinancialAccountFingerprint(Base):
    """A normalized fingerprint key that identifies a financial account."""

    __tablename__ = "financial_account_fingerprints"
    __table_args__ = (
        Index("IX_financial_account_fingerprints_fingerprint", "fingerprint"),
        {"schema": "finance"},
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    financial_account_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("finance.financial_accounts.id", ondelete="CASCADE"),
        nullable=False,
    )
    fingerprint: Mapped[str] = mapped_column(String(255), nullable=False)

    financial_account: Mapped["FinancialAccount"] = relationship(
        "FinancialAccount",
        back_populates="fingerprints",
    )

    def __repr__(self) -> str:
        return (
            f"<FinancialAccountFingerprint(account_id={self.financial_account_id}, "
            f"fingerprint='{self.fingerprint}')>"
        )

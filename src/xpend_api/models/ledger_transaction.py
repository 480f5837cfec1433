"""LedgerTransaction model: audit log of balance effects."""

from datetime import datetime
from decimal import Decimal

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from xpend_api.db.base import Base


class LedgerTransaction(Base):
    """Records the effect of a parsed transaction on an account balance.

    Rows are never deleted. Reversal clears ``is_active`` and stamps
    ``reversed_at``; an edit creates a new ``update`` row that supersedes the
    previous one. At most one active row exists per parsed transaction.
    """

    __tablename__ = "ledger_transactions"
    __table_args__ = (
        Index("IX_ledger_transactions_account", "financial_account_id"),
        Index(
            "IX_ledger_transactions_parsed_active",
            "parsed_transaction_id",
            "is_active",
        ),
        {"schema": "finance"},
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    financial_account_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("finance.financial_accounts.id"), nullable=False
    )
    parsed_transaction_id: Mapped[int | None] = mapped_column(
        Integer,
        ForeignKey("finance.parsed_transactions.id", ondelete="SET NULL"),
        nullable=True,
    )
    direction: Mapped[str] = mapped_column(String(10), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(19, 4), nullable=False)
    signed_delta: Mapped[Decimal] = mapped_column(Numeric(19, 4), nullable=False)
    balance_after: Mapped[Decimal] = mapped_column(Numeric(19, 4), nullable=False)
    kind: Mapped[str] = mapped_column(
        String(10), nullable=False, default="apply"
    )  # apply/update
    supersedes_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("finance.ledger_transactions.id"), nullable=True
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    warning: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=datetime.utcnow
    )
    reversed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # Relationships
    financial_account: Mapped["FinancialAccount"] = relationship("FinancialAccount")

    def __repr__(self) -> str:
        return (
            f"<LedgerTransaction(id={self.id}, account_id={self.financial_account_id}, "
            f"delta={self.signed_delta}, active={self.is_active})>"
        )


# Import at bottom to avoid circular imports
from xpend_api.models.financial_account import FinancialAccount  # noqa: E402

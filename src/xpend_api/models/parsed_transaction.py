"""ParsedTransaction model for transaction-bearing emails."""

from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from xpend_api.db.base import Base


class ParsedTransaction(Base):
    """One row per transaction-bearing email.

    Exists independently of whether the transaction has been applied to a
    ledger. ``(mail_integration_id, source_message_id)`` is the dedup key.
    """

    __tablename__ = "parsed_transactions"
    __table_args__ = (
        UniqueConstraint(
            "mail_integration_id",
            "source_message_id",
            name="UQ_parsed_transactions_integration_message",
        ),
        Index("IX_parsed_transactions_status", "mail_integration_id", "status"),
        Index("IX_parsed_transactions_fingerprint", "normalized_fingerprint"),
        {"schema": "finance"},
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    mail_integration_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("finance.mail_integrations.id", ondelete="CASCADE"),
        nullable=False,
    )
    source_message_id: Mapped[str] = mapped_column(String(255), nullable=False)
    subject: Mapped[str | None] = mapped_column(String(500), nullable=True)
    sender: Mapped[str | None] = mapped_column(String(255), nullable=True)
    received_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    # Extracted fields
    amount: Mapped[Decimal] = mapped_column(Numeric(19, 4), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="INR")
    direction: Mapped[str] = mapped_column(String(10), nullable=False)  # credit/debit
    account_fingerprint: Mapped[str] = mapped_column(String(255), nullable=False)
    normalized_fingerprint: Mapped[str] = mapped_column(String(255), nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    description: Mapped[str] = mapped_column(String(500), nullable=False)
    reported_balance: Mapped[Decimal | None] = mapped_column(
        Numeric(19, 4), nullable=True
    )
    rule_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    account_type: Mapped[str | None] = mapped_column(String(30), nullable=True)
    confidence_score: Mapped[Decimal] = mapped_column(
        Numeric(5, 4), nullable=False
    )  # 0.0000 to 1.0000

    # Processing state
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="pending"
    )  # pending/processed/rejected
    processed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    ledger_transaction_id: Mapped[int | None] = mapped_column(
        Integer, nullable=True
    )  # weak link to finance.ledger_transactions
    # Set by a manual apply; such rows skip the confidence threshold on re-apply
    manually_applied: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=datetime.utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    # Relationships
    mail_integration: Mapped["MailIntegration"] = relationship(
        "MailIntegration",
        back_populates="parsed_transactions",
    )

    def __repr__(self) -> str:
        return (
            f"<ParsedTransaction(id={self.id}, message='{self.source_message_id}', "
            f"{self.direction} {self.amount}, status='{self.status}')>"
        )


# Import at bottom to avoid circular imports
from xpend_api.models.mail_integration import MailIntegration  # noqa: E402

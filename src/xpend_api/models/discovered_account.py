"""DiscoveredAccount model for accounts inferred from unmatched fingerprints."""

from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
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


class DiscoveredAccount(Base):
    """A staged financial account awaiting user approval.

    One row per (integration, normalized fingerprint); repeat sightings bump
    ``sighting_count`` instead of creating new rows.
    """

    __tablename__ = "discovered_accounts"
    __table_args__ = (
        UniqueConstraint(
            "mail_integration_id",
            "normalized_fingerprint",
            name="UQ_discovered_accounts_integration_fingerprint",
        ),
        Index("IX_discovered_accounts_status", "status"),
        {"schema": "finance"},
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    mail_integration_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("finance.mail_integrations.id", ondelete="CASCADE"),
        nullable=False,
    )
    institution: Mapped[str] = mapped_column(String(200), nullable=False)
    account_type: Mapped[str] = mapped_column(String(30), nullable=False, default="bank")
    account_number_partial: Mapped[str | None] = mapped_column(String(4), nullable=True)
    normalized_fingerprint: Mapped[str] = mapped_column(String(255), nullable=False)
    inferred_opening_balance: Mapped[Decimal | None] = mapped_column(
        Numeric(19, 4), nullable=True
    )
    reported_balance: Mapped[Decimal | None] = mapped_column(
        Numeric(19, 4), nullable=True
    )  # latest balance quoted in an email
    balance_as_of: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    confidence_score: Mapped[Decimal] = mapped_column(Numeric(5, 4), nullable=False)
    sighting_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    source_message_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="pending"
    )  # pending/approved/rejected
    processed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    financial_account_id: Mapped[int | None] = mapped_column(
        Integer, nullable=True
    )  # weak link to finance.financial_accounts
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=datetime.utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    # Relationships
    mail_integration: Mapped["MailIntegration"] = relationship(
        "MailIntegration",
        back_populates="discovered_accounts",
    )

    @property
    def display_name(self) -> str:
        """Name used for the materialized account, e.g. 'SBI Bank ****1234'."""
        if self.account_number_partial:
            return f"{self.institution} ****{self.account_number_partial}"
        return self.institution

    def __repr__(self) -> str:
        return (
            f"<DiscoveredAccount(id={self.id}, "
            f"fingerprint='{self.normalized_fingerprint}', status='{self.status}')>"
        )


# Import at bottom to avoid circular imports
from xpend_api.models.mail_integration import MailIntegration  # noqa: E402

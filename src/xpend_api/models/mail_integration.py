"""MailIntegration model for connected mailboxes."""

from datetime import datetime

from sqlalchemy import (
    Boolean,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from xpend_api.db.base import Base


class MailIntegration(Base):
    """One connected mailbox per user and provider.

    OAuth tokens are stored encrypted. ``last_synced_at`` is the sync
    watermark; ``None`` forces a full lookback scan on the next sync.
    """

    __tablename__ = "mail_integrations"
    __table_args__ = (
        UniqueConstraint(
            "user_id",
            "provider",
            "email_address",
            name="UQ_mail_integrations_user_provider_email",
        ),
        Index("IX_mail_integrations_user_active", "user_id", "is_active"),
        {"schema": "finance"},
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    provider: Mapped[str] = mapped_column(
        String(20), nullable=False
    )  # gmail, outlook, yahoo
    email_address: Mapped[str] = mapped_column(String(255), nullable=False)
    encrypted_access_token: Mapped[str] = mapped_column(Text, nullable=False)
    encrypted_refresh_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    token_expires_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    last_synced_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    status: Mapped[str] = mapped_column(
        String(30), nullable=False, default="connected"
    )  # connected/reconnect_required/disconnected
    transactions_ingested: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    accounts_discovered: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=datetime.utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    # Relationships
    parsed_transactions: Mapped[list["ParsedTransaction"]] = relationship(
        "ParsedTransaction",
        back_populates="mail_integration",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    discovered_accounts: Mapped[list["DiscoveredAccount"]] = relationship(
        "DiscoveredAccount",
        back_populates="mail_integration",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    def __repr__(self) -> str:
        return (
            f"<MailIntegration(id={self.id}, user='{self.user_id}', "
            f"email='{self.email_address}', provider='{self.provider}')>"
        )


# Import at bottom to avoid circular imports
from xpend_api.models.discovered_account import DiscoveredAccount  # noqa: E402
from xpend_api.models.parsed_transaction import ParsedTransaction  # noqa: E402

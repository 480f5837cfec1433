"""Pytest configuration and fixtures."""

from collections.abc import Callable, Generator
from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from cryptography.fernet import Fernet
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from xpend_api.core.config import Settings
from xpend_api.db.base import Base, import_models
from xpend_api.main import app
from xpend_api.models.financial_account import FinancialAccount
from xpend_api.models.mail_integration import MailIntegration
from xpend_api.models.parsed_transaction import ParsedTransaction
from xpend_api.repositories.financial_account_repository import (
    FinancialAccountRepository,
)
from xpend_api.repositories.mail_integration_repository import (
    MailIntegrationRepository,
)
from xpend_api.repositories.parsed_transaction_repository import (
    ParsedTransactionRepository,
)
from xpend_api.services.account_resolver import normalize_fingerprint
from xpend_api.services.mail_gateway import (
    CredentialsExpiredError,
    MailGatewayInterface,
    MailMessage,
    MailUserInfo,
    MessageBatch,
    OAuthTokens,
    TokenCipher,
)

# ============================================================================
# Fake mail provider
# ============================================================================


class FakeMailGateway(MailGatewayInterface):
    """In-memory mail provider keyed by access token.

    Each access token names one mailbox, so several integrations can share
    the gateway while failing or succeeding independently.
    """

    provider = "gmail"

    def __init__(self) -> None:
        self.mailboxes: dict[str, list[MailMessage]] = {}
        self.failures: dict[str, Exception] = {}
        self.expired_tokens: set[str] = set()
        self.refreshed: dict[str, str] = {}
        self.refresh_error: Exception | None = None
        self.refresh_calls: list[str] = []
        self.list_calls: list[tuple[str, datetime | None]] = []
        self.email_address = "user@gmail.com"

    def generate_auth_url(self, state: str | None = None) -> str:
        return f"https://auth.example.test/{self.provider}?state={state or ''}"

    def exchange_code_for_tokens(self, code: str) -> OAuthTokens:
        return OAuthTokens(
            access_token=f"access-{code}",
            refresh_token=f"refresh-{code}",
            expires_at=datetime.utcnow() + timedelta(hours=1),
        )

    def refresh_access_token(self, refresh_token: str) -> OAuthTokens:
        self.refresh_calls.append(refresh_token)
        if self.refresh_error is not None:
            raise self.refresh_error
        return OAuthTokens(
            access_token=self.refreshed.get(refresh_token, f"fresh-{refresh_token}"),
            refresh_token=None,
            expires_at=datetime.utcnow() + timedelta(hours=1),
        )

    def get_user_info(self, access_token: str) -> MailUserInfo:
        return MailUserInfo(email_address=self.email_address)

    def list_messages_since(
        self,
        access_token: str,
        watermark: datetime | None,
        lookback_days: int = 30,
        max_results: int = 100,
    ) -> MessageBatch:
        self.list_calls.append((access_token, watermark))
        if access_token in self.expired_tokens:
            raise CredentialsExpiredError("access token expired")
        if access_token in self.failures:
            raise self.failures[access_token]
        # Newest first, like Gmail; over the cap the oldest messages are kept.
        messages = sorted(
            (
                m
                for m in self.mailboxes.get(access_token, [])
                if watermark is None or m.received_at > watermark
            ),
            key=lambda m: m.received_at,
            reverse=True,
        )
        truncated = len(messages) > max_results
        if truncated:
            messages = messages[-max_results:]
        return MessageBatch(messages=messages, truncated=truncated)


# ============================================================================
# FastAPI test client
# ============================================================================


@pytest.fixture
def client() -> TestClient:
    """Create a test client."""
    return TestClient(app)


# ============================================================================
# Unit test fixtures (SQLite in-memory)
# ============================================================================


@pytest.fixture
def test_engine():
    """Create an in-memory SQLite engine with the 'finance' schema attached.

    Uses StaticPool so every thread (TestClient workers included) shares the
    single connection that carries the attached schema.
    """
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    @event.listens_for(engine, "connect")
    def setup_sqlite(dbapi_connection, connection_record):  # type: ignore[no-untyped-def]
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute("ATTACH DATABASE ':memory:' AS finance")
        cursor.close()

    import_models()
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def in_memory_db(test_engine) -> Generator[Session, None, None]:
    """Create an in-memory SQLite session for unit testing."""
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def db_session(in_memory_db: Session) -> Session:
    """Alias for in_memory_db fixture (used by unit tests)."""
    return in_memory_db


# ============================================================================
# Domain fixtures
# ============================================================================


@pytest.fixture
def encryption_key() -> str:
    """A fresh Fernet key."""
    return Fernet.generate_key().decode("ascii")


@pytest.fixture
def cipher(encryption_key: str) -> TokenCipher:
    """Token cipher over a fresh key."""
    return TokenCipher(encryption_key)


@pytest.fixture
def fake_gateway() -> FakeMailGateway:
    """Fake Gmail gateway with empty mailboxes."""
    return FakeMailGateway()


@pytest.fixture
def gateways(fake_gateway: FakeMailGateway) -> dict[str, MailGatewayInterface]:
    """Provider registry holding the fake gateway."""
    return {"gmail": fake_gateway}


@pytest.fixture
def test_settings(encryption_key: str) -> Settings:
    """Settings isolated from the environment."""
    return Settings(
        _env_file=None,
        database_url="sqlite:///:memory:",
        token_encryption_key=encryption_key,
        sync_max_workers=2,
        auto_apply_min_confidence=Decimal("0.7"),
        parsing_rules_path=None,
    )


@pytest.fixture
def make_integration(
    db_session: Session, cipher: TokenCipher
) -> Callable[..., MailIntegration]:
    """Factory creating committed integrations whose tokens name a fake mailbox."""

    def _make(
        access_token: str = "token-a",
        user_id: str = "user-1",
        email_address: str | None = None,
        refresh_token: str | None = "refresh-a",
        token_expires_at: datetime | None = None,
        last_synced_at: datetime | None = None,
    ) -> MailIntegration:
        repo = MailIntegrationRepository(db_session)
        integration = repo.create(
            user_id=user_id,
            provider="gmail",
            email_address=email_address or f"{access_token}@gmail.com",
            encrypted_access_token=cipher.encrypt(access_token),
            encrypted_refresh_token=cipher.encrypt(refresh_token) if refresh_token else None,
            token_expires_at=token_expires_at or datetime.utcnow() + timedelta(hours=1),
        )
        if last_synced_at is not None:
            repo.set_watermark(integration.id, last_synced_at)
        db_session.commit()
        return integration

    return _make


@pytest.fixture
def make_account(db_session: Session) -> Callable[..., FinancialAccount]:
    """Factory creating committed financial accounts carrying raw fingerprints."""

    def _make(
        raw_fingerprint: str = "SBI Bank XX1234",
        opening_balance: Decimal = Decimal("10000"),
        account_type: str = "savings",
        user_id: str = "user-1",
        display_name: str | None = None,
    ) -> FinancialAccount:
        fingerprint = normalize_fingerprint(raw_fingerprint)
        account = FinancialAccountRepository(db_session).create(
            user_id=user_id,
            account_type=account_type,
            display_name=display_name or raw_fingerprint,
            opening_balance=opening_balance,
            institution=fingerprint.institution.title(),
            account_number_partial=fingerprint.last4,
            fingerprints=[fingerprint.key],
        )
        db_session.commit()
        return account

    return _make


@pytest.fixture
def make_parsed(db_session: Session) -> Callable[..., ParsedTransaction]:
    """Factory creating pending parsed transactions for an integration."""

    def _make(
        mail_integration_id: int,
        message_id: str,
        amount: Decimal,
        direction: str = "debit",
        occurred_at: datetime = datetime(2025, 1, 10, 9, 0),
        account_fingerprint: str = "SBI Bank XX1234",
        reported_balance: Decimal | None = None,
        confidence_score: Decimal = Decimal("1.0"),
        account_type: str | None = "bank",
    ) -> ParsedTransaction:
        return ParsedTransactionRepository(db_session).create(
            mail_integration_id=mail_integration_id,
            source_message_id=message_id,
            amount=amount,
            direction=direction,
            account_fingerprint=account_fingerprint,
            normalized_fingerprint=normalize_fingerprint(account_fingerprint).key,
            occurred_at=occurred_at,
            received_at=occurred_at,
            description="transfer",
            confidence_score=confidence_score,
            reported_balance=reported_balance,
            account_type=account_type,
        )

    return _make


def mail(
    message_id: str,
    body: str,
    received_at: datetime,
    sender: str = "alerts@sbi.co.in",
    subject: str = "Transaction alert",
) -> MailMessage:
    """Build a MailMessage for tests."""
    return MailMessage(
        message_id=message_id,
        subject=subject,
        sender=sender,
        body=body,
        received_at=received_at,
    )


@pytest.fixture
def make_mail() -> Callable[..., MailMessage]:
    """Factory for MailMessage objects."""
    return mail


# ============================================================================
# Markers
# ============================================================================


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests (SQLite)")
    config.addinivalue_line("markers", "integration: End-to-end pipeline tests (SQLite)")


def pytest_collection_modifyitems(config: pytest.Config, items: list) -> None:
    """Automatically mark tests based on their location."""
    for item in items:
        # Mark tests in integration/ directory
        if "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)
        # Mark tests in models/ and repositories/ as unit tests by default
        elif "models" in str(item.fspath) or "repositories" in str(item.fspath):
            item.add_marker(pytest.mark.unit)

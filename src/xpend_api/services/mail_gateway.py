"""Mail access gateway: OAuth credentials and message fetching per provider."""

import base64
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any
from urllib.parse import urlencode

import requests
from bs4 import BeautifulSoup
from cryptography.fernet import Fernet, InvalidToken

from xpend_api.core.config import Settings

logger = logging.getLogger(__name__)

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"
GMAIL_API_BASE = "https://gmail.googleapis.com/gmail/v1"

RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})
SUPPORTED_PROVIDERS = ("gmail", "outlook", "yahoo")


class MailGatewayError(Exception):
    """Base error for mail provider failures."""

    pass


class TransientMailError(MailGatewayError):
    """Raised when a provider call still fails after all retries."""

    pass


class CredentialsExpiredError(MailGatewayError):
    """Raised when the provider rejects the access or refresh token."""

    pass


class UnsupportedProviderError(MailGatewayError):
    """Raised when no gateway is registered for a provider."""

    pass


class TokenEncryptionError(Exception):
    """Raised when tokens cannot be encrypted or decrypted."""

    pass


@dataclass
class OAuthTokens:
    """Tokens returned by a code exchange or refresh."""

    access_token: str
    refresh_token: str | None
    expires_at: datetime | None


@dataclass
class MailUserInfo:
    """Mailbox identity of an access token."""

    email_address: str


@dataclass
class MailMessage:
    """A fetched message reduced to the fields the parser needs."""

    message_id: str
    subject: str
    sender: str
    body: str
    received_at: datetime


@dataclass
class MessageBatch:
    """Messages fetched for one sync window.

    ``truncated`` is set when the window held more messages than were
    fetched. The batch then holds the oldest ones, so the newest
    ``received_at`` in it is a safe watermark for the next listing.
    """

    messages: list[MailMessage]
    truncated: bool = False


class TokenCipher:
    """Symmetric encryption for OAuth tokens stored at rest (Fernet)."""

    def __init__(self, key: str | bytes | None) -> None:
        """Initialize the cipher.

        Args:
            key: urlsafe base64 Fernet key.

        Raises:
            TokenEncryptionError: If the key is missing or malformed.
        """
        if not key:
            raise TokenEncryptionError("TOKEN_ENCRYPTION_KEY is not configured")
        try:
            self._fernet = Fernet(key)
        except (TypeError, ValueError) as e:
            raise TokenEncryptionError(f"Invalid token encryption key: {e}") from e

    def encrypt(self, token: str) -> str:
        """Encrypt a token for storage."""
        return self._fernet.encrypt(token.encode("utf-8")).decode("ascii")

    def decrypt(self, encrypted_token: str) -> str:
        """Decrypt a stored token.

        Raises:
            TokenEncryptionError: If the ciphertext was not produced by this key.
        """
        try:
            return self._fernet.decrypt(encrypted_token.encode("ascii")).decode("utf-8")
        except InvalidToken as e:
            raise TokenEncryptionError("Stored token could not be decrypted") from e


class MailGatewayInterface(ABC):
    """Capability interface every mail provider implements."""

    provider: str

    @abstractmethod
    def generate_auth_url(self, state: str | None = None) -> str:
        """Build the provider consent URL.

        Args:
            state: Opaque value echoed back to the callback.

        Returns:
            URL the user is redirected to.
        """
        pass

    @abstractmethod
    def exchange_code_for_tokens(self, code: str) -> OAuthTokens:
        """Exchange an authorization code for tokens."""
        pass

    @abstractmethod
    def refresh_access_token(self, refresh_token: str) -> OAuthTokens:
        """Obtain a new access token.

        Raises:
            CredentialsExpiredError: If the refresh token is no longer valid.
        """
        pass

    @abstractmethod
    def get_user_info(self, access_token: str) -> MailUserInfo:
        """Look up the mailbox address for an access token."""
        pass

    @abstractmethod
    def list_messages_since(
        self,
        access_token: str,
        watermark: datetime | None,
        lookback_days: int = 30,
        max_results: int = 100,
    ) -> MessageBatch:
        """Fetch candidate transaction messages newer than the watermark.

        Args:
            access_token: Valid OAuth access token.
            watermark: Last synced timestamp (UTC), or None for a full lookback.
            lookback_days: Window used when there is no watermark.
            max_results: Upper bound on messages fetched in full. When the
                window holds more, the oldest ones are returned and the
                batch is marked truncated.

        Raises:
            CredentialsExpiredError: If the access token is rejected.
            TransientMailError: If the provider stays unavailable.
            MailGatewayError: If the provider returns a malformed payload.
        """
        pass


def html_to_text(html: str) -> str:
    """Reduce an HTML body to whitespace-normalized text."""
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(["script", "style"]):
        tag.decompose()
    return " ".join(soup.get_text(separator=" ").split())


def _decode_part(data: str) -> str:
    padded = data + "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(padded).decode("utf-8", errors="ignore")


def extract_message_body(payload: dict[str, Any]) -> str:
    """Extract readable text from a Gmail message payload.

    Walks nested multipart payloads. Plain text wins over HTML; HTML is
    converted to text with BeautifulSoup.
    """
    plain: list[str] = []
    html: list[str] = []

    def walk(part: dict[str, Any]) -> None:
        data = part.get("body", {}).get("data")
        mime_type = part.get("mimeType", "")
        if data:
            if mime_type == "text/html":
                html.append(_decode_part(data))
            elif mime_type.startswith("text/") or not mime_type:
                plain.append(_decode_part(data))
        for child in part.get("parts", []) or []:
            walk(child)

    walk(payload)
    if plain:
        return "\n".join(text.strip() for text in plain)
    if html:
        return html_to_text("\n".join(html))
    return ""


class GmailGateway(MailGatewayInterface):
    """Gmail implementation over the Google OAuth and Gmail REST APIs."""

    provider = "gmail"

    def __init__(
        self,
        client_id: str | None,
        client_secret: str | None,
        redirect_uri: str,
        scopes: str,
        search_query: str,
        max_retries: int = 3,
        backoff_seconds: float = 1.0,
        timeout_seconds: float = 30.0,
        http: requests.Session | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Initialize the gateway.

        Args:
            client_id: Google OAuth client ID.
            client_secret: Google OAuth client secret.
            redirect_uri: Registered OAuth redirect URI.
            scopes: Space separated OAuth scopes.
            search_query: Gmail search expression selecting bank alerts.
            max_retries: Attempts per call before giving up on transient errors.
            backoff_seconds: Initial retry delay, doubled after each attempt.
            timeout_seconds: Per-request timeout.
            http: Session used for requests (injected in tests).
            sleep: Delay function (injected in tests).
        """
        self._client_id = client_id
        self._client_secret = client_secret
        self._redirect_uri = redirect_uri
        self._scopes = scopes
        self._search_query = search_query
        self._max_retries = max(1, max_retries)
        self._backoff_seconds = backoff_seconds
        self._timeout = timeout_seconds
        self._http = http or requests.Session()
        self._sleep = sleep

    def _require_client(self) -> None:
        if not self._client_id or not self._client_secret:
            raise MailGatewayError("GOOGLE_CLIENT_ID or GOOGLE_CLIENT_SECRET not configured")

    def _request(self, method: str, url: str, **kwargs: Any) -> dict[str, Any]:
        """Execute a request with exponential backoff.

        Raises:
            CredentialsExpiredError: On 401, or invalid_grant from the token endpoint.
            TransientMailError: When retryable failures exhaust the retry budget.
            MailGatewayError: On any other non-success response.
        """
        delay = self._backoff_seconds
        last_error = "no attempt made"

        for attempt in range(1, self._max_retries + 1):
            try:
                response = self._http.request(method, url, timeout=self._timeout, **kwargs)
            except requests.RequestException as e:
                last_error = str(e)
                logger.warning(
                    "Gmail request failed (attempt %d/%d): %s",
                    attempt,
                    self._max_retries,
                    e,
                )
            else:
                if response.status_code == 401:
                    raise CredentialsExpiredError("Gmail rejected the access token")
                if response.status_code == 400 and "invalid_grant" in response.text:
                    raise CredentialsExpiredError("Gmail refresh token is no longer valid")
                if response.status_code in RETRYABLE_STATUS_CODES:
                    last_error = f"HTTP {response.status_code}"
                    logger.warning(
                        "Gmail API returned %d (attempt %d/%d)",
                        response.status_code,
                        attempt,
                        self._max_retries,
                    )
                elif response.status_code >= 400:
                    raise MailGatewayError(
                        f"Gmail request to {url} failed with HTTP {response.status_code}"
                    )
                else:
                    try:
                        return response.json()
                    except ValueError as e:
                        raise MailGatewayError(
                            f"Gmail request to {url} returned a non-JSON body"
                        ) from e

            if attempt < self._max_retries:
                self._sleep(delay)
                delay *= 2

        raise TransientMailError(
            f"Gmail request to {url} failed after {self._max_retries} attempts: {last_error}"
        )

    def _tokens_from_response(
        self, data: dict[str, Any], refresh_token: str | None = None
    ) -> OAuthTokens:
        access_token = data.get("access_token")
        if not access_token:
            raise MailGatewayError("Token response did not include an access token")
        expires_in = data.get("expires_in")
        expires_at = (
            datetime.utcnow() + timedelta(seconds=int(expires_in)) if expires_in else None
        )
        return OAuthTokens(
            access_token=access_token,
            refresh_token=data.get("refresh_token") or refresh_token,
            expires_at=expires_at,
        )

    def generate_auth_url(self, state: str | None = None) -> str:
        self._require_client()
        params = {
            "client_id": self._client_id,
            "redirect_uri": self._redirect_uri,
            "response_type": "code",
            "scope": self._scopes,
            "access_type": "offline",
            "prompt": "consent",
        }
        if state:
            params["state"] = state
        return f"{GOOGLE_AUTH_URL}?{urlencode(params)}"

    def exchange_code_for_tokens(self, code: str) -> OAuthTokens:
        self._require_client()
        data = self._request(
            "POST",
            GOOGLE_TOKEN_URL,
            data={
                "grant_type": "authorization_code",
                "client_id": self._client_id,
                "client_secret": self._client_secret,
                "redirect_uri": self._redirect_uri,
                "code": code,
            },
        )
        logger.info("Gmail token exchange successful")
        return self._tokens_from_response(data)

    def refresh_access_token(self, refresh_token: str) -> OAuthTokens:
        self._require_client()
        data = self._request(
            "POST",
            GOOGLE_TOKEN_URL,
            data={
                "grant_type": "refresh_token",
                "client_id": self._client_id,
                "client_secret": self._client_secret,
                "refresh_token": refresh_token,
            },
        )
        # Google omits the refresh token on refresh; keep the one we have.
        return self._tokens_from_response(data, refresh_token=refresh_token)

    def get_user_info(self, access_token: str) -> MailUserInfo:
        data = self._request(
            "GET",
            GOOGLE_USERINFO_URL,
            headers={"Authorization": f"Bearer {access_token}"},
        )
        email_address = data.get("email")
        if not email_address:
            raise MailGatewayError("User info response did not include an email address")
        return MailUserInfo(email_address=email_address)

    def build_query(self, watermark: datetime | None, lookback_days: int) -> str:
        """Build the Gmail search expression for a sync window.

        Args:
            watermark: Naive UTC timestamp of the last synced message.
            lookback_days: Window used when there is no watermark.
        """
        if watermark is None:
            return f"{self._search_query} newer_than:{lookback_days}d"
        epoch = int(watermark.replace(tzinfo=timezone.utc).timestamp())
        return f"{self._search_query} after:{epoch}"

    def list_messages_since(
        self,
        access_token: str,
        watermark: datetime | None,
        lookback_days: int = 30,
        max_results: int = 100,
    ) -> MessageBatch:
        headers = {"Authorization": f"Bearer {access_token}"}
        query = self.build_query(watermark, lookback_days)

        # Gmail lists newest first; collect every id in the window.
        message_ids: list[str] = []
        page_token: str | None = None
        while True:
            params: dict[str, Any] = {"q": query, "maxResults": 100}
            if page_token:
                params["pageToken"] = page_token
            data = self._request(
                "GET", f"{GMAIL_API_BASE}/users/me/messages", headers=headers, params=params
            )
            for entry in data.get("messages", []):
                if not isinstance(entry, dict) or "id" not in entry:
                    raise MailGatewayError("Gmail message listing entry has no id")
                message_ids.append(entry["id"])
            page_token = data.get("nextPageToken")
            if not page_token:
                break

        truncated = len(message_ids) > max_results
        if truncated:
            message_ids = message_ids[-max_results:]

        messages = []
        for message_id in reversed(message_ids):
            data = self._request(
                "GET",
                f"{GMAIL_API_BASE}/users/me/messages/{message_id}",
                headers=headers,
                params={"format": "full"},
            )
            message = self._to_mail_message(data)
            # after: has one-second granularity; drop anything not strictly newer.
            if watermark is not None and message.received_at <= watermark:
                continue
            messages.append(message)

        logger.info(
            "Fetched %d Gmail messages for query %r%s",
            len(messages),
            query,
            " (truncated)" if truncated else "",
        )
        return MessageBatch(messages=messages, truncated=truncated)

    def _to_mail_message(self, data: dict[str, Any]) -> MailMessage:
        try:
            payload = data.get("payload", {})
            headers = {h["name"].lower(): h["value"] for h in payload.get("headers", [])}
            internal_date = data.get("internalDate")
            received_at = (
                datetime.fromtimestamp(int(internal_date) / 1000, tz=timezone.utc).replace(
                    tzinfo=None
                )
                if internal_date
                else datetime.utcnow()
            )
            message_id = data["id"]
            body = extract_message_body(payload)
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise MailGatewayError(f"Malformed Gmail message payload: {e!r}") from e
        return MailMessage(
            message_id=message_id,
            subject=headers.get("subject", ""),
            sender=headers.get("from", ""),
            body=body,
            received_at=received_at,
        )


def build_gateways(settings: Settings) -> dict[str, MailGatewayInterface]:
    """Build the provider to gateway registry from configuration."""
    return {
        "gmail": GmailGateway(
            client_id=settings.google_client_id,
            client_secret=settings.google_client_secret,
            redirect_uri=settings.google_redirect_uri,
            scopes=settings.google_scopes,
            search_query=settings.mail_search_query,
            max_retries=settings.gateway_max_retries,
            backoff_seconds=settings.gateway_backoff_seconds,
            timeout_seconds=settings.gateway_timeout_seconds,
        )
    }


def get_gateway(
    gateways: dict[str, MailGatewayInterface], provider: str
) -> MailGatewayInterface:
    """Look up a provider's gateway.

    Raises:
        UnsupportedProviderError: If the provider has no registered gateway.
    """
    gateway = gateways.get(provider)
    if gateway is None:
        raise UnsupportedProviderError(f"Mail provider '{provider}' is not supported")
    return gateway

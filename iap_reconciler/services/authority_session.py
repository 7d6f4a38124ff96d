"""Connection lifecycle of the outbound client to the verification authority.

One AuthoritySession is owned by the application context and shared by the
verifier and the acknowledgment scheduler. It opens its httpx client
lazily, and after a dropped connection it reopens with exponential backoff
until max_reconnect_attempts consecutive drops, at which point callers get
SessionUnavailable.
"""

import asyncio
import threading
from enum import Enum
from typing import Any, AsyncGenerator, Generator, Optional

import google.auth
import google.auth.credentials
import google.auth.exceptions
import httpx
from google.auth.transport import requests as google_requests
from starlette.concurrency import run_in_threadpool

from iap_reconciler.logging_config import get_logger
from iap_reconciler.models.settings import AuthorityConfig

logger = get_logger(__name__)

ANDROID_PUBLISHER_SCOPE = "https://www.googleapis.com/auth/androidpublisher"


class ConnectionState(str, Enum):
    """Connection state of the authority session."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class SessionUnavailable(Exception):
    """Raised when the session gave up reconnecting."""

    retryable = True


class GoogleCredentialsAuth(httpx.Auth):
    """Bearer auth from google-auth credentials, refreshed once they expire.

    The refresh is a blocking HTTP call; the async flow runs it in a worker thread.
    """

    def __init__(self, credentials: google.auth.credentials.Credentials, request: Optional[Any] = None):
        self._credentials = credentials
        self._request = request or google_requests.Request()
        self._lock = threading.Lock()

    def token(self) -> str:
        """Return a valid access token, refreshing the credentials first if needed."""
        with self._lock:
            if not self._credentials.valid:
                self._credentials.refresh(self._request)
                logger.info("authority_credentials_refreshed", expiry=str(getattr(self._credentials, "expiry", None)))
            return self._credentials.token

    def sync_auth_flow(self, request: httpx.Request) -> Generator[httpx.Request, httpx.Response, None]:
        request.headers["Authorization"] = f"Bearer {self.token()}"
        yield request

    async def async_auth_flow(self, request: httpx.Request) -> AsyncGenerator[httpx.Request, httpx.Response]:
        token = await run_in_threadpool(self.token)
        request.headers["Authorization"] = f"Bearer {token}"
        yield request


class AuthoritySession:
    """Owned httpx.AsyncClient with reconnect bookkeeping."""

    def __init__(
        self,
        config: AuthorityConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        credentials: Optional[google.auth.credentials.Credentials] = None,
    ):
        """Initialize a disconnected session.

        Args:
            config: Authority connection settings
            transport: Optional httpx transport (tests pass httpx.MockTransport)
            credentials: google-auth credentials; application default
                credentials are loaded when neither these nor a static
                access token are configured
        """
        self._config = config
        self._transport = transport
        self._auth = GoogleCredentialsAuth(credentials) if credentials is not None else None
        self._client: Optional[httpx.AsyncClient] = None
        self._state = ConnectionState.DISCONNECTED
        self._consecutive_drops = 0
        self._lock = asyncio.Lock()

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def consecutive_drops(self) -> int:
        return self._consecutive_drops

    async def client(self) -> httpx.AsyncClient:
        """Return the connected client, connecting first if needed.

        Raises:
            SessionUnavailable: After too many consecutive dropped connections
        """
        async with self._lock:
            if self._client is None or self._client.is_closed:
                await self._connect()
            return self._client

    async def _connect(self) -> None:
        if self._consecutive_drops > self._config.max_reconnect_attempts:
            drops = self._consecutive_drops
            # Next caller starts a fresh round of attempts
            self._consecutive_drops = 0
            logger.error("authority_session_unavailable", consecutive_drops=drops)
            raise SessionUnavailable(f"Authority unreachable after {drops} dropped connections")

        self._state = ConnectionState.CONNECTING
        if self._consecutive_drops:
            delay = self._config.reconnect_backoff_seconds * 2 ** (self._consecutive_drops - 1)
            logger.info("authority_session_reconnecting", attempt=self._consecutive_drops, delay_seconds=delay)
            await asyncio.sleep(delay)

        headers = {"Accept": "application/json"}
        auth = None
        if self._config.access_token:
            headers["Authorization"] = f"Bearer {self._config.access_token}"
        else:
            auth = await self._credentials_auth()

        self._client = httpx.AsyncClient(
            base_url=self._config.base_url,
            headers=headers,
            auth=auth,
            timeout=httpx.Timeout(self._config.timeout_seconds, connect=self._config.connect_timeout_seconds),
            transport=self._transport,
        )
        self._state = ConnectionState.CONNECTED
        logger.info("authority_session_connected", base_url=self._config.base_url)

    async def _credentials_auth(self) -> GoogleCredentialsAuth:
        if self._auth is None:
            try:
                credentials, project = await run_in_threadpool(google.auth.default, scopes=[ANDROID_PUBLISHER_SCOPE])
            except google.auth.exceptions.DefaultCredentialsError as e:
                self._state = ConnectionState.DISCONNECTED
                logger.error("authority_credentials_missing", error=str(e))
                raise SessionUnavailable(f"No credentials for the authority: {e}") from e
            self._auth = GoogleCredentialsAuth(credentials)
            logger.info("authority_credentials_loaded", project=project)
        return self._auth

    async def mark_dropped(self, error: Exception) -> None:
        """Close the client after a transport failure; the next call reconnects."""
        async with self._lock:
            self._consecutive_drops += 1
            await self._close_client()
            logger.warning(
                "authority_session_dropped",
                consecutive_drops=self._consecutive_drops,
                error=str(error),
            )

    def mark_healthy(self) -> None:
        """Reset the drop counter after a successful round trip."""
        self._consecutive_drops = 0

    async def reconnect(self) -> httpx.AsyncClient:
        """Close the current client and open a new one."""
        async with self._lock:
            await self._close_client()
            await self._connect()
            return self._client

    async def close(self) -> None:
        async with self._lock:
            await self._close_client()
            logger.info("authority_session_closed")

    async def _close_client(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
        self._state = ConnectionState.DISCONNECTED

"""
Shared HTTP plumbing for provider fetchers: client setup, retry with
linear backoff, and the FetchError raised when a provider cannot be read.
"""
import logging
import time
from abc import ABC, abstractmethod
from typing import Callable, Iterator, Optional

import httpx

from config import SyncSettings
from models import StreamProvider
from stream_record import StreamRecord

logger = logging.getLogger(__name__)

# Transport errors worth another attempt
RETRYABLE_ERRORS = (httpx.ConnectError, httpx.TimeoutException)


class FetchError(Exception):
    """A provider catalog could not be fetched or parsed."""

    def __init__(self, message: str, provider_id: Optional[int] = None):
        super().__init__(message)
        self.provider_id = provider_id


class BaseFetcher(ABC):
    """
    Base class for provider fetchers.

    Subclasses implement fetch_streams() as a generator of StreamRecord.
    Use as a context manager so the HTTP client is closed.
    """

    def __init__(
        self,
        provider: StreamProvider,
        settings: SyncSettings,
        client: Optional[httpx.Client] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.provider = provider
        self.provider_id = provider.id
        self.settings = settings
        self.domain = (provider.sp_domain or "").strip().rstrip("/")
        self.username = provider.sp_username or ""
        self.password = provider.sp_password or ""
        self.extension = provider.stream_extension
        self._sleep = sleep
        self._owns_client = client is None
        self._client = client or httpx.Client(
            timeout=settings.http_timeout,
            follow_redirects=True,
            headers={
                "User-Agent": settings.user_agent,
                "Accept": "*/*",
                "Accept-Encoding": "gzip, deflate",
            },
        )

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False

    def close(self) -> None:
        """Close the HTTP client if this fetcher created it."""
        if self._owns_client:
            self._client.close()

    @abstractmethod
    def fetch_streams(self) -> Iterator[StreamRecord]:
        """Yield normalized records for the provider's catalog."""

    def _fail(self, message: str) -> FetchError:
        return FetchError(
            f"Provider {self.provider_id} ({self.provider.sp_name}): {message}",
            provider_id=self.provider_id,
        )

    def _request(self, url: str, params: Optional[dict] = None, label: str = "request",
                 stream: bool = False) -> httpx.Response:
        """
        GET with retries on connection errors, timeouts and 5xx responses.

        Args:
            url: Target URL
            params: Query parameters (credentials go here, never into log lines)
            label: Short description for log lines
            stream: Return an unread streaming response; the caller must close it

        Returns:
            A successful response

        Raises:
            FetchError: on 4xx, on non-retryable transport errors, or once
                all attempts are used up
        """
        attempts = self.settings.retry_attempts
        last_error: Optional[Exception] = None

        for attempt in range(1, attempts + 1):
            try:
                request = self._client.build_request("GET", url, params=params)
                response = self._client.send(request, stream=stream)
            except RETRYABLE_ERRORS as e:
                last_error = e
                logger.warning(
                    f"[FETCH] {label} for provider {self.provider_id} failed "
                    f"(attempt {attempt}/{attempts}): {type(e).__name__}: {e}"
                )
            except httpx.HTTPError as e:
                raise self._fail(f"{label} failed: {e}") from e
            else:
                status = response.status_code
                if status < 400:
                    return response
                if stream:
                    response.close()
                if status >= 500:
                    last_error = httpx.HTTPStatusError(
                        f"Server error {status}", request=response.request, response=response
                    )
                    logger.warning(
                        f"[FETCH] {label} for provider {self.provider_id} returned HTTP {status} "
                        f"(attempt {attempt}/{attempts})"
                    )
                elif status in (401, 403):
                    raise self._fail(f"{label} rejected credentials (HTTP {status})")
                else:
                    raise self._fail(f"{label} returned HTTP {status}")

            if attempt < attempts:
                delay = self.settings.retry_delay * attempt
                logger.debug(f"[FETCH] Retrying {label} in {delay:.1f}s")
                self._sleep(delay)

        raise self._fail(
            f"{label} failed after {attempts} attempts: {last_error}"
        ) from last_error

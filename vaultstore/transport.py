"""
Blob Transport — put/get/delete of opaque encrypted blobs.

``BlobTransport`` wraps any ``BlobClient`` in a bounded retry loop with
exponential backoff. Only transient failures are retried; a well-formed
rejection from the store propagates immediately.

Security Note:
    Blobs are always encrypted before they reach this module. Log blob
    references and sizes only.
"""
import base64
import asyncio
import hashlib
import logging
from typing import Any, Awaitable, Callable, Optional, Protocol, TypeVar

import aiohttp

from .exceptions import (
    BlobNotFound,
    BlobRejected,
    PayloadTooLarge,
    TransientBlobError,
    TransportFailed,
)

logger = logging.getLogger("vaultstore.transport")

T = TypeVar("T")

# Failures that may succeed on a later attempt.
RETRYABLE_ERRORS: tuple[type[BaseException], ...] = (
    TransientBlobError,
    aiohttp.ClientConnectionError,
    aiohttp.ServerTimeoutError,
    asyncio.TimeoutError,
    ConnectionError,
)


class BlobClient(Protocol):
    """Wire contract of the remote blob store."""

    async def put(self, data: bytes) -> str: ...

    async def get(self, blob_ref: str) -> bytes: ...

    async def delete(self, blob_ref: str) -> None: ...


# ---------------------------------------------------------------------------
# Clients
# ---------------------------------------------------------------------------

class HttpBlobClient:
    """aiohttp client for a Walrus-style publisher/aggregator pair.

    - ``PUT {publisher}/v1/blobs?epochs=N`` stores a blob
    - ``GET {aggregator}/v1/blobs/{ref}`` reads a blob
    - ``DELETE {publisher}/v1/blobs/{ref}`` deletes a blob
    """

    def __init__(
        self,
        publisher_url: str,
        aggregator_url: str,
        epochs: int = 10,
        timeout: float = 30.0,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.publisher_url = publisher_url.rstrip("/")
        self.aggregator_url = aggregator_url.rstrip("/")
        self.epochs = epochs
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._session = session
        self._owns_session = session is None

    @classmethod
    def from_config(cls, config) -> "HttpBlobClient":
        return cls(
            publisher_url=config.publisher_url,
            aggregator_url=config.aggregator_url,
            epochs=config.storage_epochs,
            timeout=config.request_timeout,
        )

    def _client(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
        self._session = None

    async def __aenter__(self) -> "HttpBlobClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    @staticmethod
    async def _raise_for_status(resp: aiohttp.ClientResponse, blob_ref: str = "") -> None:
        status = resp.status
        if status < 400:
            return
        reason = (await resp.text())[:200] or resp.reason or ""
        if status == 404:
            raise BlobNotFound(f"Blob not found: {blob_ref}", blob_ref=blob_ref)
        if status == 413:
            raise PayloadTooLarge(reason or "Payload too large", status=status)
        if status in (408, 429) or status >= 500:
            raise TransientBlobError(
                f"Blob store returned {status}: {reason}", status=status
            )
        raise BlobRejected(f"Blob store returned {status}: {reason}", status=status)

    @staticmethod
    def _parse_blob_ref(body: Any) -> str:
        """Extract the blob id from a publisher response."""
        if isinstance(body, dict):
            if "newlyCreated" in body:
                return body["newlyCreated"]["blobObject"]["blobId"]
            if "alreadyCertified" in body:
                return body["alreadyCertified"]["blobId"]
            if "blobId" in body:
                return body["blobId"]
        raise BlobRejected("Unexpected publisher response", body=str(body)[:200])

    async def put(self, data: bytes) -> str:
        url = f"{self.publisher_url}/v1/blobs"
        async with self._client().put(
            url, data=data, params={"epochs": str(self.epochs)}
        ) as resp:
            await self._raise_for_status(resp)
            try:
                body = await resp.json(content_type=None)
            except ValueError as err:
                raise BlobRejected("Unexpected publisher response") from err
        try:
            return self._parse_blob_ref(body)
        except (KeyError, TypeError) as err:
            raise BlobRejected("Unexpected publisher response") from err

    async def get(self, blob_ref: str) -> bytes:
        url = f"{self.aggregator_url}/v1/blobs/{blob_ref}"
        async with self._client().get(url) as resp:
            await self._raise_for_status(resp, blob_ref)
            return await resp.read()

    async def delete(self, blob_ref: str) -> None:
        url = f"{self.publisher_url}/v1/blobs/{blob_ref}"
        async with self._client().delete(url) as resp:
            await self._raise_for_status(resp, blob_ref)


class MemoryBlobStore:
    """In-process content-addressed blob store.

    Blob references are the URL-safe base64 SHA-256 of the content, so
    storing the same bytes twice yields the same reference.
    """

    def __init__(self):
        self.blobs: dict[str, bytes] = {}

    @staticmethod
    def content_ref(data: bytes) -> str:
        digest = hashlib.sha256(data).digest()
        return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")

    async def put(self, data: bytes) -> str:
        ref = self.content_ref(data)
        self.blobs[ref] = bytes(data)
        return ref

    async def get(self, blob_ref: str) -> bytes:
        try:
            return self.blobs[blob_ref]
        except KeyError:
            raise BlobNotFound(f"Blob not found: {blob_ref}", blob_ref=blob_ref) from None

    async def delete(self, blob_ref: str) -> None:
        if self.blobs.pop(blob_ref, None) is None:
            raise BlobNotFound(f"Blob not found: {blob_ref}", blob_ref=blob_ref)


# ---------------------------------------------------------------------------
# Retrying transport
# ---------------------------------------------------------------------------

class BlobTransport:
    """Stateless network boundary with bounded retry.

    ``last_attempts`` reports how many attempts the most recent call made.
    """

    def __init__(
        self,
        client: BlobClient,
        retry_attempts: int = 3,
        backoff_base_delay: float = 1.0,
        max_blob_size: int = 10 * 1024 * 1024,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.client = client
        self.retry_attempts = retry_attempts
        self.backoff_base_delay = backoff_base_delay
        self.max_blob_size = max_blob_size
        self._sleep = sleep
        self.last_attempts = 0

    @classmethod
    def from_config(cls, config, client: BlobClient) -> "BlobTransport":
        return cls(
            client,
            retry_attempts=config.retry_attempts,
            backoff_base_delay=config.backoff_base_delay,
            max_blob_size=config.max_blob_size,
        )

    def backoff(self, attempt: int) -> float:
        """Delay before retrying after the zero-based ``attempt``."""
        return self.backoff_base_delay * (2 ** attempt)

    async def _with_retry(
        self, operation: str, call: Callable[[], Awaitable[T]]
    ) -> T:
        last_error: Optional[BaseException] = None
        for attempt in range(self.retry_attempts):
            self.last_attempts = attempt + 1
            try:
                return await call()
            except RETRYABLE_ERRORS as err:
                last_error = err
                logger.warning(
                    "Blob %s attempt %d/%d failed: %s",
                    operation, attempt + 1, self.retry_attempts, err,
                )
                if attempt < self.retry_attempts - 1:
                    await self._sleep(self.backoff(attempt))
        raise TransportFailed(operation, self.retry_attempts) from last_error

    async def put(self, data: bytes) -> str:
        """Store a blob and return its reference.

        Raises:
            PayloadTooLarge: Before any network attempt if the blob is
                over ``max_blob_size``.
            TransportFailed: When retries are exhausted.
        """
        if len(data) > self.max_blob_size:
            self.last_attempts = 0
            raise PayloadTooLarge(
                f"Blob of {len(data)} bytes exceeds limit of "
                f"{self.max_blob_size} bytes",
                size=len(data),
                limit=self.max_blob_size,
            )
        blob_ref = await self._with_retry("put", lambda: self.client.put(data))
        logger.debug("Stored blob %s (%d bytes)", blob_ref, len(data))
        return blob_ref

    async def get(self, blob_ref: str) -> bytes:
        data = await self._with_retry("get", lambda: self.client.get(blob_ref))
        logger.debug("Fetched blob %s (%d bytes)", blob_ref, len(data))
        return data

    async def delete(self, blob_ref: str) -> None:
        await self._with_retry("delete", lambda: self.client.delete(blob_ref))
        logger.debug("Deleted blob %s", blob_ref)

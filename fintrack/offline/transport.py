"""
Replay Transports

A transport delivers one queued mutation to the server operation a live
client would call, tagged with the mutation's idempotency key, and
either returns the server's response body or raises a LedgerError.

The queue classifies failures only through ``LedgerError.retryable``:
a TransientError halts replay, anything else fails the entry.
"""

from abc import ABC, abstractmethod
from typing import Any, Optional, Union
from uuid import UUID

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)
from tenacity.wait import wait_base

from fintrack.api import LedgerApi
from fintrack.config import get_settings
from fintrack.errors import LedgerError, TransientError, error_from_dict
from fintrack.models.mutations import PendingMutation

logger = structlog.get_logger(__name__)

IDEMPOTENCY_HEADER = "Idempotency-Key"


class MutationTransport(ABC):
    """Sends one mutation to the server."""

    @abstractmethod
    async def send(self, mutation: PendingMutation) -> dict[str, Any]:
        """
        Deliver ``mutation``.

        Returns:
            The server's success response

        Raises:
            TransientError: The server could not be reached; safe to retry
            LedgerError: The server rejected the mutation
        """
        pass


class InProcessTransport(MutationTransport):
    """Calls a LedgerApi living in the same process."""

    def __init__(self, api: LedgerApi, principal: Union[UUID, str]):
        self._api = api
        self._principal = principal

    async def send(self, mutation: PendingMutation) -> dict[str, Any]:
        response = await self._api.dispatch(
            mutation.type,
            mutation.payload(),
            self._principal,
            idempotency_key=mutation.id,
        )
        if not response.get("success"):
            raise error_from_dict(response)
        return response


class HttpMutationTransport(MutationTransport):
    """
    Posts mutations to ``{base_url}/rpc/{operation}`` with httpx.

    Connection failures and timeouts are retried a few times with
    exponential backoff before giving up as a TransientError. 5xx and 429
    responses are transient; other 4xx responses are rejections.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        access_token: Optional[str] = None,
        timeout: Optional[float] = None,
        retries: Optional[int] = None,
        client: Optional[httpx.AsyncClient] = None,
        retry_wait: Optional[wait_base] = None,
    ):
        settings = get_settings().server
        self.base_url = (base_url or settings.base_url).rstrip("/")
        self._access_token = access_token or settings.access_token
        self._timeout = timeout or settings.timeout_seconds
        self._retries = retries if retries is not None else settings.transport_retries
        self._retry_wait = retry_wait or wait_exponential(multiplier=0.5, max=5)
        self._client = client

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(self._timeout),
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "HttpMutationTransport":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    def _headers(self, idempotency_key: str) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            IDEMPOTENCY_HEADER: idempotency_key,
        }
        if self._access_token:
            headers["Authorization"] = f"Bearer {self._access_token}"
        return headers

    async def send(self, mutation: PendingMutation) -> dict[str, Any]:
        client = await self._get_client()
        path = f"/rpc/{mutation.type}"

        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception_type(httpx.TransportError),
                stop=stop_after_attempt(self._retries),
                wait=self._retry_wait,
                reraise=True,
            ):
                with attempt:
                    response = await client.post(
                        path,
                        json=mutation.payload(),
                        headers=self._headers(mutation.id),
                    )
        except httpx.TransportError as e:
            logger.warning(
                "mutation_transport_unreachable",
                mutation_id=mutation.id,
                operation=mutation.type,
                error=str(e),
            )
            raise TransientError(
                f"Could not reach server: {e}",
                details={"operation": mutation.type},
            ) from e

        body = self._parse_body(response)
        if response.status_code >= 500 or response.status_code == 429:
            raise TransientError(
                f"Server unavailable: {response.status_code}",
                details={"status_code": response.status_code},
            )
        if response.status_code >= 400 or not body.get("success", True):
            if "error_kind" in body:
                raise error_from_dict(body)
            raise LedgerError(
                f"Request rejected: {response.status_code}",
                reason="rejected",
                details={"status_code": response.status_code, "body": body},
            )
        return body

    @staticmethod
    def _parse_body(response: httpx.Response) -> dict[str, Any]:
        if not response.content:
            return {}
        try:
            body = response.json()
        except ValueError:
            return {"raw": response.text[:500]}
        return body if isinstance(body, dict) else {"raw": body}

"""Provider gateway interface shared by all Git hosting backends."""

from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from enum import Enum
from typing import AsyncIterator, Dict

import httpx

from ..core.exceptions import ProviderError
from ..domain import MergeResult, MergeStrategy, PullRequestRef, PullRequestState

# Provider responses map onto the same three states as the local cache
RemoteState = PullRequestState


class ProviderType(str, Enum):
    GITHUB = "github"
    GITLAB = "gitlab"
    BITBUCKET = "bitbucket"
    MOCK = "mock"


class BaseProvider(ABC):
    """Stateless per call: fetch current PR state and execute merges."""

    provider_type: ProviderType

    @abstractmethod
    async def fetch_state(self, ref: PullRequestRef) -> RemoteState:
        """Return the provider's current view of the pull request."""

    @abstractmethod
    async def merge(
        self, ref: PullRequestRef, strategy: MergeStrategy, delete_branch: bool
    ) -> MergeResult:
        """Merge the pull request. Raises ProviderError on refusal or transport failure."""

    async def healthcheck(self) -> bool:
        return True

    async def aclose(self) -> None:
        return None


_STATUS_KINDS: Dict[int, str] = {
    400: ProviderError.VALIDATION,
    401: ProviderError.PERMISSION,
    403: ProviderError.PERMISSION,
    404: ProviderError.NOT_FOUND,
    405: ProviderError.CONFLICT,
    406: ProviderError.CONFLICT,
    409: ProviderError.CONFLICT,
    422: ProviderError.VALIDATION,
    429: ProviderError.RATE_LIMITED,
}


def error_kind_for_status(status_code: int) -> str:
    if status_code in _STATUS_KINDS:
        return _STATUS_KINDS[status_code]
    if status_code >= 500:
        return ProviderError.NETWORK
    return ProviderError.UNKNOWN


class HTTPProvider(BaseProvider):
    """Base for REST providers: lazily created httpx client and error mapping."""

    def __init__(self, base_url: str, timeout: int = 30):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client: httpx.AsyncClient | None = None

    def _headers(self) -> Dict[str, str]:
        return {"Accept": "application/json"}

    def _auth(self) -> httpx.Auth | None:
        return None

    @property
    def client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                headers=self._headers(),
                auth=self._auth(),
            )
        return self._client

    async def aclose(self) -> None:
        """Close HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    @asynccontextmanager
    async def _translate_errors(self, action: str, ref: PullRequestRef) -> AsyncIterator[None]:
        """Turn httpx failures into ProviderError with a readable message."""
        provider = self.provider_type.value
        try:
            yield
        except httpx.TimeoutException as exc:
            raise ProviderError(
                f"Timed out trying to {action} {ref}", kind=ProviderError.TIMEOUT, provider=provider
            ) from exc
        except httpx.HTTPStatusError as exc:
            status_code = exc.response.status_code
            detail = _error_detail(exc.response)
            raise ProviderError(
                f"Could not {action} {ref}: HTTP {status_code}{': ' + detail if detail else ''}",
                kind=error_kind_for_status(status_code),
                provider=provider,
            ) from exc
        except httpx.HTTPError as exc:
            raise ProviderError(
                f"Network error trying to {action} {ref}: {exc}",
                kind=ProviderError.NETWORK,
                provider=provider,
            ) from exc


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200].strip()
    if isinstance(body, dict):
        for key in ("message", "error", "detail"):
            value = body.get(key)
            if isinstance(value, str):
                return value
            if isinstance(value, dict) and isinstance(value.get("message"), str):
                return value["message"]
    return ""

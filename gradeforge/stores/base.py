"""
Shared pieces for the remote stores.

Both stores authenticate with a bearer token obtained from a TokenProvider.
Acquiring and refreshing the token happens outside this process.
"""

from collections.abc import Awaitable, Callable, Sequence
from typing import Any, Protocol

import httpx

from gradeforge.models.card import Card
from gradeforge.models.failure import FailureKind, KnownError, SourceNotConfiguredError

TokenProvider = Callable[[], Awaitable[str]]

DEFAULT_TIMEOUT = 30.0


class RemoteStoreError(KnownError):
    """A remote store request failed or returned an error status."""

    def __init__(self, operation: str, message: str, status_code: int | None = None):
        self.operation = operation
        self.upstream_status = status_code
        detail = f"HTTP {status_code}" if status_code is not None else None
        super().__init__(
            kind=FailureKind.EXTERNAL_API_ERROR,
            message=f"Failed to {operation}: {message}",
            detail=detail,
            suggestion="Check the access token and sharing permissions, then try again.",
            status_code=502,
        )


def static_token(token: str) -> TokenProvider:
    """TokenProvider that always returns the same token."""

    async def provide() -> str:
        return token

    return provide


class TokenHolder:
    """Mutable TokenProvider; stores built on it see token updates."""

    def __init__(self, token: str = ""):
        self.token = token

    async def __call__(self) -> str:
        return self.token


async def bearer_headers(token_provider: TokenProvider, source: str) -> dict[str, str]:
    token = await token_provider()
    if not token:
        raise SourceNotConfiguredError(source)
    return {"Authorization": f"Bearer {token}"}


def error_message(response: httpx.Response, default: str) -> str:
    """Google APIs report errors as {"error": {"message": ...}}."""
    try:
        body: Any = response.json()
    except ValueError:
        return default
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
    return default


class RemoteCollectionStore(Protocol):
    """One JSON blob holding the whole collection."""

    async def load(self) -> tuple[str | None, list[Card]]:
        """Return (handle, cards); handle is None when no collection exists."""
        ...

    async def save(self, handle: str | None, cards: Sequence[Card]) -> str:
        """Write the collection, creating it when handle is None. Returns the handle."""
        ...


class TabularSource(Protocol):
    """A spreadsheet of graded cards, one row per card."""

    async def fetch_rows(self) -> list[Card]: ...

    async def append_rows(self, cards: Sequence[Card]) -> int: ...

"""Port: token-issuing credential (azure-identity's async TokenCredential satisfies it)."""
from __future__ import annotations

from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class AccessTokenLike(Protocol):
    @property
    def token(self) -> str: ...

    @property
    def expires_on(self) -> int: ...


@runtime_checkable
class TokenCredential(Protocol):
    async def get_token(self, *scopes: str, **kwargs: Any) -> AccessTokenLike: ...

    async def close(self) -> None: ...

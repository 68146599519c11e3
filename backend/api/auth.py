"""
API key gate for the memory routes.

The key comes from MEMORY_INDEX_API_KEY and is accepted either in the
X-Memory-Index-API-Key header or as a bearer token. Without a configured key
every request is refused, unless MEMORY_INDEX_ALLOW_INSECURE_LOCAL is set and
the client is on loopback.
"""

import hmac
import os
from dataclasses import dataclass
from typing import Optional

from fastapi import Header, HTTPException, Request, status

API_KEY_ENV = "MEMORY_INDEX_API_KEY"
API_KEY_HEADER = "X-Memory-Index-API-Key"
ALLOW_INSECURE_LOCAL_ENV = "MEMORY_INDEX_ALLOW_INSECURE_LOCAL"

_LOOPBACK_HOSTS = frozenset({"127.0.0.1", "::1", "localhost"})


@dataclass(frozen=True)
class AuthPolicy:
    api_key: str = ""
    allow_insecure_local: bool = False

    @classmethod
    def from_env(cls) -> "AuthPolicy":
        flag = (os.getenv(ALLOW_INSECURE_LOCAL_ENV) or "").strip().lower()
        return cls(
            api_key=(os.getenv(API_KEY_ENV) or "").strip(),
            allow_insecure_local=flag in {"1", "true", "yes", "on"},
        )


def presented_key(header_value: Optional[str], authorization: Optional[str]) -> str:
    """Key from the dedicated header, else from `Authorization: Bearer ...`."""
    direct = (header_value or "").strip()
    if direct:
        return direct
    scheme, _, token = (authorization or "").strip().partition(" ")
    return token.strip() if scheme.lower() == "bearer" else ""


def check_access(policy: AuthPolicy, client_host: str, presented: str) -> Optional[str]:
    """Return None when access is granted, otherwise the refusal reason."""
    if not policy.api_key:
        if not policy.allow_insecure_local:
            return "api_key_not_configured"
        if client_host.strip().lower() in _LOOPBACK_HOSTS:
            return None
        return "insecure_local_override_requires_loopback"
    if presented and hmac.compare_digest(presented.encode("utf-8"), policy.api_key.encode("utf-8")):
        return None
    return "invalid_or_missing_api_key"


async def require_api_key(
    request: Request,
    x_memory_index_api_key: Optional[str] = Header(default=None, alias=API_KEY_HEADER),
    authorization: Optional[str] = Header(default=None, alias="Authorization"),
) -> None:
    client_host = request.client.host if request.client is not None else ""
    reason = check_access(
        AuthPolicy.from_env(),
        client_host or "",
        presented_key(x_memory_index_api_key, authorization),
    )
    if reason is not None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"error": "memory_auth_failed", "reason": reason},
            headers={"WWW-Authenticate": "Bearer"},
        )

"""FastAPI authentication dependencies."""

from __future__ import annotations

from dataclasses import dataclass

import jwt
from fastapi import Security
from fastapi.security import APIKeyHeader, HTTPAuthorizationCredentials, HTTPBearer

from irac.auth.api_keys import verify_service_key
from irac.auth.jwt import verify_token
from irac.config import get_settings
from irac.scoring.exceptions import AuthRequiredError, PermissionDeniedError

SERVICE_ROLE = "service"

_bearer = HTTPBearer(auto_error=False)
_api_key = APIKeyHeader(name="X-API-Key", auto_error=False)


@dataclass(frozen=True)
class Caller:
    """Authenticated principal. Service callers have no user id of their own."""

    user_id: str | None
    role: str | None = None

    @property
    def is_privileged(self) -> bool:
        return self.role in (SERVICE_ROLE, get_settings().admin_role)

    def require_user_id(self) -> str:
        if self.user_id is None:
            raise AuthRequiredError("A user token is required for this endpoint")
        return self.user_id

    def can_act_for(self, user_id: str) -> bool:
        return self.is_privileged or self.user_id == user_id


async def get_caller(
    credentials: HTTPAuthorizationCredentials | None = Security(_bearer),
    api_key: str | None = Security(_api_key),
) -> Caller:
    """
    Resolve the caller from a bearer JWT or a service API key.

    Raises AuthRequiredError (401) when neither is present or valid.
    """
    if api_key:
        if verify_service_key(api_key):
            return Caller(user_id=None, role=SERVICE_ROLE)
        raise AuthRequiredError("Invalid API key")

    if credentials is None:
        raise AuthRequiredError("User authentication required", {"auth_required": True})
    try:
        payload = verify_token(credentials.credentials)
    except jwt.InvalidTokenError as e:
        raise AuthRequiredError(str(e), {"auth_required": True}) from e
    return Caller(user_id=str(payload["sub"]), role=payload.get("role"))


async def require_privileged(caller: Caller = Security(get_caller)) -> Caller:
    """Admin or service caller."""
    if not caller.is_privileged:
        raise PermissionDeniedError("Admin or service credentials required")
    return caller

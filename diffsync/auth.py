from __future__ import annotations
import hmac
from fastapi import Request, Security
from fastapi.security import APIKeyHeader
from diffsync.exceptions import PermissionDeniedError


class ApiKeyRejectedError(PermissionDeniedError):
    message = "Invalid or missing API key"
    suggestions = ["Send a valid key in the X-API-Key header"]


_api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


async def require_api_key(
    request: Request,
    api_key: str | None = Security(_api_key_header),
) -> str:
    expected = request.app.state.settings.API_KEY
    if not api_key or not hmac.compare_digest(api_key.encode(), expected.encode()):
        raise ApiKeyRejectedError()
    return api_key

from __future__ import annotations

from fastapi import HTTPException, Request
from starlette.middleware.base import BaseHTTPMiddleware

from ..auth.cognito import CognitoAuthError, verify_bearer_token
from ..observability.logging import get_logger
from ..problem_details import problem_response

# Hosted checkout pages and invoice payment links are opened by payers without a Peeap login.
_PUBLIC_PREFIXES = ("/api/public/",)
# Monime authenticates with an HMAC signature, verified in the webhook router.
_SIGNED_PREFIXES = ("/api/webhooks/",)


def is_public_path(path: str, method: str = "GET") -> bool:
    if path == "/":
        return True
    if path.startswith(_PUBLIC_PREFIXES) or path.startswith(_SIGNED_PREFIXES):
        return True
    return False


async def require_auth(request: Request):
    path = request.url.path
    method = request.method.upper()

    # CORSMiddleware answers preflight.
    if method == "OPTIONS":
        return

    if not path.startswith("/api/"):
        return

    if is_public_path(path, method):
        return

    auth = request.headers.get("authorization")
    if not auth:
        raise HTTPException(status_code=401, detail="Unauthorized")

    parts = str(auth).split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise HTTPException(status_code=401, detail="Unauthorized")

    try:
        user = verify_bearer_token(parts[1].strip())
    except CognitoAuthError as e:
        raise HTTPException(status_code=int(e.status_code), detail=str(e))

    request.state.user = user


class AuthMiddleware(BaseHTTPMiddleware):
    """
    Bearer-token enforcement for /api/*.

    Added before CORSMiddleware so CORS wraps auth failures too.
    """

    async def dispatch(self, request: Request, call_next):
        log = get_logger("auth_middleware")
        try:
            await require_auth(request)
        except HTTPException as exc:
            status_code = int(exc.status_code or 500)
            if status_code >= 500:
                log.error("auth_middleware_error", status_code=status_code, path=request.url.path)
            else:
                log.info("auth_middleware_denied", status_code=status_code, path=request.url.path)
            return problem_response(
                request=request,
                status_code=status_code,
                title="Unauthorized" if status_code == 401 else None,
                detail=str(exc.detail) if isinstance(exc.detail, str) else None,
            )
        return await call_next(request)

from fastapi import Request, FastAPI
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
import html

from shared.utils import ErrorResponse, settings

# --- Rate Limiting ---
def session_or_remote_address(request: Request) -> str:
    """Rate-limit key: the storefront session when present, else the client address.

    Shoppers behind one NAT share an address but never a session cookie.
    """
    session_id = request.cookies.get(settings.SESSION_COOKIE_NAME)
    if session_id:
        return f"session:{session_id}"
    return get_remote_address(request)

limiter = Limiter(key_func=session_or_remote_address)

async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    # slowapi builds the 429 and its rate-limit headers; only the body is ours
    default = _rate_limit_exceeded_handler(request, exc)
    headers = {
        k: v for k, v in default.headers.items()
        if k.lower() not in ("content-length", "content-type")
    }
    return JSONResponse(
        status_code=default.status_code,
        content=ErrorResponse(
            error=f"Rate limit exceeded: {exc.detail}",
            details={"code": "rate_limited"},
        ).model_dump(),
        headers=headers,
    )

def setup_rate_limiting(app: FastAPI, enabled: bool = True):
    limiter.enabled = enabled
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)

# --- Security Headers Middleware ---
class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)

        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        response.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none';"
        response.headers["Referrer-Policy"] = "no-referrer"
        # Checkout responses carry client secrets and order data
        response.headers["Cache-Control"] = "no-store"

        return response

# --- Input Sanitization ---
def sanitize_input(text: str) -> str:
    """Trim and HTML-escape free text (address lines, names) before it is stored on an order."""
    if not isinstance(text, str):
        return text
    return html.escape(text.strip())

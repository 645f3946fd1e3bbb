"""Request body size guard for write endpoints.

Heartbeats are small JSON documents; anything far larger is a broken or
hostile client. This caps what the API will buffer before parsing.
"""

from __future__ import annotations

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from ..observability import get_request_id


WRITE_METHODS = frozenset({"POST", "PUT", "PATCH"})


class BodySizeLimitMiddleware(BaseHTTPMiddleware):
    """Reject POST/PUT/PATCH bodies larger than `max_body_bytes` with 413.

    Only paths starting with one of `paths` are checked (all paths when empty).
    The Content-Length header is trusted for the fast path; otherwise the body
    is read once and handed on to the route.
    """

    def __init__(self, app, *, max_body_bytes: int, paths: list[str] | None = None) -> None:
        super().__init__(app)
        self.max_body_bytes = int(max_body_bytes)
        self.paths = paths or []

    def _applies_to(self, request: Request) -> bool:
        if self.max_body_bytes <= 0 or request.method.upper() not in WRITE_METHODS:
            return False
        if not self.paths:
            return True
        return any(request.url.path.startswith(p) for p in self.paths)

    async def dispatch(self, request: Request, call_next) -> Response:
        if not self._applies_to(request):
            return await call_next(request)

        declared = request.headers.get("content-length")
        if declared and declared.isdigit() and int(declared) > self.max_body_bytes:
            return _payload_too_large(max_bytes=self.max_body_bytes)

        body = await request.body()
        if len(body) > self.max_body_bytes:
            return _payload_too_large(max_bytes=self.max_body_bytes)

        return await call_next(request)


def _payload_too_large(*, max_bytes: int) -> JSONResponse:
    rid = get_request_id() or "unknown"
    return JSONResponse(
        status_code=413,
        content={
            "error": {
                "code": "PAYLOAD_TOO_LARGE",
                "message": "Request body exceeds configured limit.",
                "max_request_body_bytes": max_bytes,
                "request_id": rid,
            }
        },
        headers={"X-Request-ID": rid},
    )

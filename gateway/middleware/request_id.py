import re
from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

REQUEST_ID_HEADER = "x-request-id"
_SAFE_REQUEST_ID = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")


def _incoming_request_id(request: Request) -> str | None:
    candidate = request.headers.get(REQUEST_ID_HEADER, "").strip()
    return candidate if _SAFE_REQUEST_ID.match(candidate) else None


def request_id_from_request(request: Request) -> str:
    """Return the id assigned by ``RequestIDMiddleware``, minting one if absent."""
    state_id = getattr(request.state, "request_id", None)
    return state_id or _incoming_request_id(request) or str(uuid4())


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Accept a well-formed client request id or assign a fresh one."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = _incoming_request_id(request) or str(uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request_id
        return response

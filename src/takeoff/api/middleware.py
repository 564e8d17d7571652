"""Request ID middleware for the Takeoff API."""

import uuid
from collections.abc import Awaitable, Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from takeoff.api.errors import REQUEST_ID_HEADER


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Attach a request ID to every request and echo it on the response.

    An incoming non-empty X-Request-Id header is reused; otherwise a uuid4
    is generated. Stored on request.state.request_id.
    """

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        incoming_request_id = request.headers.get(REQUEST_ID_HEADER)

        if incoming_request_id and incoming_request_id.strip():
            request_id = incoming_request_id.strip()
        else:
            request_id = str(uuid.uuid4())

        request.state.request_id = request_id

        response: Response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request_id
        return response

"""Request-scoped logging context.

Assigns every request an id (honouring an inbound ``X-Request-Id``), binds it
to the logging context vars for the duration of the request and echoes it on
the response.
"""

import logging
import re
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from ..observability.logging import clear_log_context, set_log_context

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-Id"

_VALID_REQUEST_ID = re.compile(r"^[A-Za-z0-9._-]{1,64}$")


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Populate log context for each request."""

    async def dispatch(self, request: Request, call_next):
        request_id = self._resolve_request_id(request)
        clear_log_context()
        set_log_context(request_id=request_id)
        try:
            response = await call_next(request)
        finally:
            clear_log_context()
        response.headers[REQUEST_ID_HEADER] = request_id
        return response

    @staticmethod
    def _resolve_request_id(request: Request) -> str:
        inbound = request.headers.get(REQUEST_ID_HEADER)
        if inbound and _VALID_REQUEST_ID.match(inbound):
            return inbound
        return uuid.uuid4().hex

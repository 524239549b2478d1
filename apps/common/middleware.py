"""
Common middleware for the Bookstore Platform.
"""

import uuid
from collections.abc import Callable

from django.http import HttpRequest, HttpResponse

from apps.common.logging import clear_request_context, set_request_context

# ===============================================================================
# REQUEST ID MIDDLEWARE
# ===============================================================================

REQUEST_ID_HEADER = "HTTP_X_REQUEST_ID"
MAX_INBOUND_REQUEST_ID_LENGTH = 64


class RequestIDMiddleware:
    """Add unique request ID for tracing and correlated logs"""

    def __init__(self, get_response: Callable[[HttpRequest], HttpResponse]):
        self.get_response = get_response

    def __call__(self, request: HttpRequest) -> HttpResponse:
        # Reuse an upstream id (load balancer, gateway) when it looks sane
        inbound = request.META.get(REQUEST_ID_HEADER, "")
        if inbound and len(inbound) <= MAX_INBOUND_REQUEST_ID_LENGTH and inbound.isprintable():
            request_id = inbound
        else:
            request_id = str(uuid.uuid4())
        request.META["REQUEST_ID"] = request_id

        set_request_context(request_id=request_id)
        try:
            response = self.get_response(request)
        finally:
            clear_request_context()

        # Add to response headers for debugging
        response["X-Request-ID"] = request_id
        return response

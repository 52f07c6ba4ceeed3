import logging
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

REQUEST_ID_HEADER = "X-Request-ID"


class HTTPLogMiddleware(BaseHTTPMiddleware):
    """Logs each request with a request id, echoed back in the response headers.

    Run requests can take as long as the supervisory timeout, so slow
    requests are reported at info and server errors at warning.
    """

    def __init__(self, app, logger_name: str = "crunner.http", slow_ms: int = 5000):
        super().__init__(app)
        self._logger = logging.getLogger(logger_name)
        self._slow_ms = slow_ms

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex[:12]
        start = time.monotonic()
        method, path = request.method, request.url.path
        client = request.client.host if request.client else "-"
        size = request.headers.get("content-length", "-")
        self._logger.debug("http.request start rid=%s method=%s path=%s client=%s bytes=%s",
                           request_id, method, path, client, size)
        try:
            response: Response = await call_next(request)
        except Exception as e:
            dur_ms = int((time.monotonic() - start) * 1000)
            self._logger.warning("http.request error rid=%s method=%s path=%s dur_ms=%s err=%r",
                                 request_id, method, path, dur_ms, e)
            raise
        dur_ms = int((time.monotonic() - start) * 1000)
        if response.status_code >= 500:
            level = logging.WARNING
        elif dur_ms >= self._slow_ms:
            level = logging.INFO
        else:
            level = logging.DEBUG
        self._logger.log(level, "http.request end rid=%s method=%s path=%s status=%s dur_ms=%s",
                         request_id, method, path, response.status_code, dur_ms)
        response.headers[REQUEST_ID_HEADER] = request_id
        return response

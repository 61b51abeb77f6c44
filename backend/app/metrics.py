import logging
import threading
import time
from collections import deque
from typing import Callable, Deque, Optional, Tuple

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

# Handlers come from shared.log.setup_logging at app startup.
logger = logging.getLogger("api_requests")


class RequestWindow:
    """Counts requests seen during a trailing window (an hour by default)."""

    def __init__(self, window_seconds: float = 3600, clock: Callable[[], float] = time.monotonic):
        self.window_seconds = window_seconds
        self._clock = clock
        self._requests: Deque[Tuple[float, str, str]] = deque()
        self._lock = threading.Lock()

    def add_request(self, method: str, path: str):
        with self._lock:
            self._requests.append((self._clock(), method, path))
            self._cleanup_old_requests()

    def _cleanup_old_requests(self):
        cutoff_time = self._clock() - self.window_seconds
        while self._requests and self._requests[0][0] < cutoff_time:
            self._requests.popleft()

    def count(self, path: Optional[str] = None) -> int:
        with self._lock:
            self._cleanup_old_requests()
            if path is None:
                return len(self._requests)
            return sum(1 for _, _, request_path in self._requests if request_path == path)


request_window = RequestWindow()


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, window: Optional[RequestWindow] = None):
        super().__init__(app)
        self.window = window or request_window

    async def dispatch(self, request: Request, call_next):
        start_time = time.perf_counter()
        path = request.url.path
        self.window.add_request(request.method, path)

        response = await call_next(request)

        logger.info(
            f"{request.method} {path} | "
            f"Status: {response.status_code} | "
            f"Duration: {time.perf_counter() - start_time:.4f}s | "
            f"Requests last hour: {self.window.count()} ({self.window.count(path)} to {path})"
        )
        return response

import logging
import time
from collections import deque
from datetime import datetime, timedelta, timezone
from typing import Deque, Tuple

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from shared.schemas import MetricType, PerformanceMetricCreate

logger = logging.getLogger("api_metrics")
logger.setLevel(logging.INFO)

formatter = logging.Formatter("%(asctime)s - %(levelname)s - %(message)s")

console_handler = logging.StreamHandler()
console_handler.setFormatter(formatter)
logger.addHandler(console_handler)

SKIPPED_PATHS = {"/health", "/ws/analytics"}


class RequestWindow:
    """Requests and server errors seen during the last hour."""

    def __init__(self, window_seconds: float = 3600):
        self._window_seconds = window_seconds
        self._requests: Deque[Tuple[float, int]] = deque()

    def add(self, status_code: int):
        self._requests.append((time.perf_counter(), status_code))
        self._cleanup()

    def _cleanup(self):
        cutoff_time = time.perf_counter() - self._window_seconds
        while self._requests and self._requests[0][0] < cutoff_time:
            self._requests.popleft()

    def count(self) -> int:
        self._cleanup()
        return len(self._requests)

    def error_count(self) -> int:
        self._cleanup()
        return sum(1 for _, status_code in self._requests if status_code >= 500)


request_window = RequestWindow()


class MetricsMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        started_at = datetime.now(timezone.utc)
        start_time = time.perf_counter()

        response = await call_next(request)

        process_time = time.perf_counter() - start_time
        request_window.add(response.status_code)

        logger.info(
            f"{request.method} {request.url.path} | "
            f"Status: {response.status_code} | "
            f"Duration: {process_time:.4f}s | "
            f"Requests last hour: {request_window.count()}"
        )

        service = getattr(request.app.state, "service", None)
        if service is not None and request.url.path not in SKIPPED_PATHS:
            await service.record_performance_metric(
                PerformanceMetricCreate(
                    metric_type=MetricType.API_RESPONSE,
                    endpoint=request.url.path,
                    response_time_ms=int(process_time * 1000),
                    start_time=started_at,
                    end_time=started_at + timedelta(seconds=process_time),
                    method=request.method,
                    status_code=response.status_code,
                    user_id=request.path_params.get("user_id"),
                    metadata={"query": str(request.url.query)} if request.url.query else {},
                )
            )

        return response

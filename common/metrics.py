"""Prometheus metrics for the power control service.

Each ``PowerControlMetrics`` owns its own ``CollectorRegistry`` unless one is
passed in, so several engines (and test cases) can coexist in one process
without duplicate-timeseries errors.
"""
from __future__ import annotations

import time
from dataclasses import dataclass

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest


@dataclass
class PowerControlMetrics:
    registry: CollectorRegistry
    limit_writes_total: Counter
    limit_clamps_total: Counter
    inventory_refresh_total: Counter
    gpu_power_limit_watts: Gauge
    gpu_power_usage_watts: Gauge
    http_requests_total: Counter
    http_request_duration_seconds: Histogram

    def record_write(self, result: str) -> None:
        self.limit_writes_total.labels(result=result).inc()

    def get_write_count(self, result: str) -> float:
        return self.limit_writes_total.labels(result=result)._value.get()

    def record_clamp(self, bound: str) -> None:
        self.limit_clamps_total.labels(bound=bound).inc()

    def get_clamp_count(self, bound: str) -> float:
        return self.limit_clamps_total.labels(bound=bound)._value.get()

    def record_refresh(self, result: str) -> None:
        self.inventory_refresh_total.labels(result=result).inc()

    def get_refresh_count(self, result: str) -> float:
        return self.inventory_refresh_total.labels(result=result)._value.get()

    def observe_device(self, index: int, power_limit_watts: int, power_usage_watts: int) -> None:
        self.gpu_power_limit_watts.labels(index=str(index)).set(power_limit_watts)
        self.gpu_power_usage_watts.labels(index=str(index)).set(power_usage_watts)

    def record_request(self, method: str, path: str, status: int, seconds: float) -> None:
        self.http_requests_total.labels(method=method, path=path, status=str(status)).inc()
        self.http_request_duration_seconds.labels(method=method, path=path).observe(max(0.0, seconds))

    async def request_middleware(self, request, call_next):
        """Starlette ``http`` middleware recording request counts and latency."""
        start = time.perf_counter()
        response = await call_next(request)
        route = request.scope.get("route")
        path = getattr(route, "path", None) or request.url.path
        self.record_request(request.method, path, response.status_code, time.perf_counter() - start)
        return response

    def render(self) -> bytes:
        return generate_latest(self.registry)


def build_metrics(registry: CollectorRegistry | None = None) -> PowerControlMetrics:
    registry = registry if registry is not None else CollectorRegistry()
    return PowerControlMetrics(
        registry=registry,
        limit_writes_total=Counter(
            "power_control_limit_writes_total",
            "Count of power limit write attempts by outcome (success/failure/unsupported).",
            ["result"],
            registry=registry,
        ),
        limit_clamps_total=Counter(
            "power_control_limit_clamps_total",
            "Count of requested power limits coerced into the hardware range.",
            ["bound"],
            registry=registry,
        ),
        inventory_refresh_total=Counter(
            "power_control_inventory_refresh_total",
            "Count of GPU inventory refreshes by outcome (success/partial/failure).",
            ["result"],
            registry=registry,
        ),
        gpu_power_limit_watts=Gauge(
            "power_control_gpu_power_limit_watts",
            "Configured GPU power limit in watts as of the last read.",
            ["index"],
            registry=registry,
        ),
        gpu_power_usage_watts=Gauge(
            "power_control_gpu_power_usage_watts",
            "GPU power draw in watts as of the last read.",
            ["index"],
            registry=registry,
        ),
        http_requests_total=Counter(
            "power_control_http_requests_total",
            "Count of HTTP requests handled by the API server.",
            ["method", "path", "status"],
            registry=registry,
        ),
        http_request_duration_seconds=Histogram(
            "power_control_http_request_duration_seconds",
            "Latency of HTTP requests handled by the API server.",
            ["method", "path"],
            registry=registry,
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        ),
    )

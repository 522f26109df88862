"""
Power Control Engine - Core logic for GPU power-limit management.

This module contains:
- the GPU inventory cache, replaced wholesale on every refresh
- the clamped power-limit setter for a single device
- the mode dispatcher applying 'all' / 'manual' requests across devices

Concurrency model:
 - One engine per process owns the device gateway session. ``initialize`` opens
   it once; refreshes only re-query per-device fields.
 - Every gateway call, cache replacement and setter sequence runs under one
   re-entrant lock, so concurrent API requests never interleave NVML calls
   (a call abandoned after a timeout may still be running on its old worker).
 - Gateway calls run on a single-thread executor and are bounded by
   ``timeout_s``; a wedged driver surfaces as ``GatewayTimeout``. A timed-out
   call's worker is replaced, so one stuck device never delays calls to others
   by more than one timeout.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Mapping
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

from common.metrics import PowerControlMetrics, build_metrics
from common.observability import get_logger

from .errors import (
    DeviceNotFound,
    GatewayError,
    GatewayTimeout,
    InvalidMode,
    PowerControlError,
    UnsupportedOperation,
)
from .nvml_gateway import DeviceGateway, NvmlGateway
from .schemas import MODE_ALL, VALID_MODES, BatchOutcome, DeviceRecord, PowerLimitRequest

logger = get_logger(__name__)

DEFAULT_GATEWAY_TIMEOUT_S = 10.0
MAX_ABANDONED_GATEWAY_CALLS = 2
INVALID_MODE_MESSAGE = "Invalid mode (must be 'all' or 'manual')"


def clamp_power_limit_mw(requested_watts: int, min_mw: int, max_mw: int) -> tuple[int, str | None]:
    """Coerce a request in watts into ``[min_mw, max_mw]``.

    Returns the milliwatt value to write and the bound that was applied
    (``"min"``, ``"max"`` or ``None``). Out-of-range requests are never rejected.
    """
    requested_mw = requested_watts * 1000
    if requested_mw < min_mw:
        return min_mw, "min"
    if requested_mw > max_mw:
        return max_mw, "max"
    return requested_mw, None


@dataclass(frozen=True)
class InventorySnapshot:
    """Immutable result of one inventory refresh."""
    records: tuple[DeviceRecord, ...] = ()
    failures: Mapping[int, PowerControlError] = field(default_factory=dict)
    refreshed_at: float | None = None


class InventoryCache:
    """Last known state of every device, replaced wholesale on refresh."""

    def __init__(self) -> None:
        self._snapshot = InventorySnapshot()
        self._lock = threading.Lock()

    @property
    def snapshot(self) -> InventorySnapshot:
        with self._lock:
            return self._snapshot

    def replace(self, snapshot: InventorySnapshot) -> None:
        with self._lock:
            self._snapshot = snapshot

    def __len__(self) -> int:
        return len(self.snapshot.records)

    def get(self, index: int) -> DeviceRecord:
        records = self.snapshot.records
        if index < 0 or index >= len(records):
            raise DeviceNotFound("GPU index out of range", index=index)
        return records[index].copy()

    def records(self) -> list[DeviceRecord]:
        return [record.copy() for record in self.snapshot.records]

    def to_list(self) -> list[dict[str, Any]]:
        return [record.to_dict() for record in self.snapshot.records]


class PowerControlEngine:
    """Serializes access to the device gateway and owns the inventory cache."""

    def __init__(
        self,
        gateway: DeviceGateway | None = None,
        *,
        timeout_s: float | None = DEFAULT_GATEWAY_TIMEOUT_S,
        metrics: PowerControlMetrics | None = None,
    ):
        self.gateway = gateway if gateway is not None else NvmlGateway()
        self.timeout_s = timeout_s
        self.metrics = metrics if metrics is not None else build_metrics()
        self.cache = InventoryCache()
        self._lock = threading.RLock()
        self._executor: ThreadPoolExecutor | None = None
        self._abandoned: list[Future] = []
        self._initialized = False

    @property
    def initialized(self) -> bool:
        return self._initialized

    def initialize(self) -> None:
        """Open the gateway session. Failures here are fatal to the caller."""
        with self._lock:
            if self._initialized:
                logger.debug("Power control engine already initialized")
                return
            if self.timeout_s:
                self._executor = self._new_executor()
            try:
                self._call(self.gateway.initialize)
            except Exception:
                self._shutdown_executor()
                raise
            self._initialized = True
            logger.info("Power control engine initialized (gateway timeout=%s)", self.timeout_s)

    def shutdown(self) -> None:
        with self._lock:
            if not self._initialized:
                return
            self._initialized = False
            try:
                self._call(self.gateway.shutdown)
            except GatewayError as exc:
                logger.warning("Gateway shutdown failed: %s", exc)
            finally:
                self._shutdown_executor()
            logger.info("Power control engine shut down")

    @staticmethod
    def _new_executor() -> ThreadPoolExecutor:
        return ThreadPoolExecutor(max_workers=1, thread_name_prefix="nvml-gateway")

    def _shutdown_executor(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = None
        self._abandoned.clear()

    def _call(self, fn: Callable[..., Any], *args: Any) -> Any:
        """Run one gateway call, bounded by ``timeout_s`` when an executor is active.

        A call that times out keeps running on its worker thread, so that worker
        is abandoned and later calls go to a fresh one. Once
        ``MAX_ABANDONED_GATEWAY_CALLS`` abandoned calls are still blocked, further
        calls fail immediately instead of waiting out another timeout.
        """
        if self._executor is None:
            return fn(*args)
        name = getattr(fn, "__name__", repr(fn))
        index = args[0] if args and isinstance(args[0], int) else None

        self._abandoned = [f for f in self._abandoned if not f.done()]
        if len(self._abandoned) >= MAX_ABANDONED_GATEWAY_CALLS:
            raise GatewayTimeout(
                f"{name} not attempted: {len(self._abandoned)} earlier gateway calls are still blocked",
                index=index,
            )

        future = self._executor.submit(fn, *args)
        try:
            return future.result(timeout=self.timeout_s)
        except FuturesTimeoutError as exc:
            logger.warning("Gateway call %s exceeded %ss; replacing gateway worker", name, self.timeout_s)
            self._abandoned.append(future)
            self._executor.shutdown(wait=False)
            self._executor = self._new_executor()
            raise GatewayTimeout(f"{name} did not complete within {self.timeout_s}s", index=index) from exc

    def device_count(self) -> int:
        with self._lock:
            return int(self._call(self.gateway.device_count))

    def _read_record(self, index: int) -> tuple[DeviceRecord, PowerControlError | None]:
        """Build a record for ``index``; on failure return what was read so far plus the error."""
        record = DeviceRecord(index=index)
        try:
            record.name = self._call(self.gateway.name, index)
        except PowerControlError as exc:
            logger.debug("GPU %d: name unavailable: %s", index, exc)

        try:
            record.supported = bool(self._call(self.gateway.power_management_supported, index))
            if not record.supported:
                return record, None
            record.power_limit_watts = self._call(self.gateway.power_limit_mw, index) // 1000
            min_mw, max_mw = self._call(self.gateway.power_limit_constraints_mw, index)
            record.min_limit_watts = min_mw // 1000
            record.max_limit_watts = max_mw // 1000
        except PowerControlError as exc:
            return record, exc

        try:
            record.power_usage_watts = self._call(self.gateway.power_usage_mw, index) // 1000
        except PowerControlError as exc:
            logger.debug("GPU %d: power usage unavailable: %s", index, exc)
        return record, None

    def read_device(self, index: int) -> DeviceRecord:
        """Fresh read of a single device from the gateway."""
        with self._lock:
            record, error = self._read_record(index)
        if error is not None:
            raise error
        if record.supported:
            self.metrics.observe_device(index, record.power_limit_watts, record.power_usage_watts)
        return record

    def refresh(self) -> InventorySnapshot:
        """Rebuild the inventory cache from the gateway.

        Raises ``GatewayError`` only when the device count cannot be read, in
        which case the cache is left untouched. Per-device failures are logged
        and kept in ``snapshot.failures``; the partially read record stays in
        the snapshot.
        """
        with self._lock:
            try:
                count = self.device_count()
            except GatewayError:
                self.metrics.record_refresh("failure")
                raise

            records: list[DeviceRecord] = []
            failures: dict[int, PowerControlError] = {}
            for index in range(count):
                record, error = self._read_record(index)
                if error is not None:
                    logger.warning("Failed to get info for GPU %d: %s", index, error)
                    failures[index] = error
                elif record.supported:
                    self.metrics.observe_device(index, record.power_limit_watts, record.power_usage_watts)
                records.append(record)

            snapshot = InventorySnapshot(
                records=tuple(records),
                failures=MappingProxyType(failures),
                refreshed_at=time.time(),
            )
            self.cache.replace(snapshot)

        self.metrics.record_refresh("partial" if failures else "success")
        return snapshot

    def set_power_limit(self, index: int, watts: int) -> DeviceRecord:
        """Clamp ``watts`` into the device's range, write it, and return the re-read record."""
        with self._lock:
            if not self._call(self.gateway.power_management_supported, index):
                self.metrics.record_write("unsupported")
                raise UnsupportedOperation("power management not supported", index=index)

            min_mw, max_mw = self._call(self.gateway.power_limit_constraints_mw, index)
            limit_mw, bound = clamp_power_limit_mw(watts, min_mw, max_mw)
            if bound == "min":
                logger.info(
                    "GPU %d: Desired limit %d W below minimum %d W, setting to %d W",
                    index, watts, min_mw // 1000, limit_mw // 1000,
                )
            elif bound == "max":
                logger.info(
                    "GPU %d: Desired limit %d W above maximum %d W, setting to %d W",
                    index, watts, max_mw // 1000, limit_mw // 1000,
                )
            if bound is not None:
                self.metrics.record_clamp(bound)

            try:
                self._call(self.gateway.set_power_limit_mw, index, limit_mw)
            except GatewayError:
                self.metrics.record_write("failure")
                raise
            self.metrics.record_write("success")
            return self.read_device(index)

    def apply_mode(self, request: PowerLimitRequest, device_count: int | None = None) -> BatchOutcome:
        """Apply ``request`` across devices, skipping (and recording) per-device failures.

        Unknown modes raise ``InvalidMode`` before any device is touched.
        Manual limits are dispatched in ascending index order.
        """
        if request.mode not in VALID_MODES:
            logger.debug("Rejected power request with mode %r", request.mode)
            raise InvalidMode(INVALID_MODE_MESSAGE)
        if device_count is None:
            device_count = self.device_count()

        if request.mode == MODE_ALL:
            targets = [(index, request.power_limit_watts) for index in range(device_count)]
        else:
            targets = sorted(request.manual_limits.items())

        outcome = BatchOutcome()
        for index, watts in targets:
            if index < 0 or index >= device_count:
                logger.warning("GPU %d specified in request doesn't exist", index)
                outcome.failed[index] = DeviceNotFound(f"GPU {index} doesn't exist", index=index)
                continue
            try:
                outcome.updated.append(self.set_power_limit(index, watts))
            except PowerControlError as exc:
                logger.warning("GPU %d: Failed to set power limit: %s", index, exc)
                outcome.failed[index] = exc
        return outcome

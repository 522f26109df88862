"""
NVML gateway - the only module that talks to the NVIDIA management library.

The gateway owns the process-wide NVML session. ``initialize`` is called once
at startup and caches device handles; every other call only queries or writes
per-device fields. All NVML exceptions are translated into ``GatewayError`` so
callers never depend on ``pynvml`` types.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any, Protocol

try:  # NVML bindings are provided by the nvidia-ml-py package
    import pynvml  # type: ignore
    _HAS_PYNVML = True
except ModuleNotFoundError:  # pragma: no cover - exercised implicitly when NVML bindings are absent
    pynvml = None  # type: ignore
    _HAS_PYNVML = False

from common.observability import get_logger

from .errors import DeviceNotFound, GatewayError

logger = get_logger(__name__)


class DeviceGateway(Protocol):
    """Surface of the device-management library used by the engine."""

    def initialize(self) -> None: ...

    def shutdown(self) -> None: ...

    def device_count(self) -> int: ...

    def name(self, index: int) -> str: ...

    def power_management_supported(self, index: int) -> bool: ...

    def power_limit_mw(self, index: int) -> int: ...

    def power_limit_constraints_mw(self, index: int) -> tuple[int, int]: ...

    def power_usage_mw(self, index: int) -> int: ...

    def set_power_limit_mw(self, index: int, value_mw: int) -> None: ...


@contextmanager
def _translate_errors(action: str, index: int | None = None) -> Iterator[None]:
    try:
        yield
    except GatewayError:
        raise
    except Exception as exc:
        if pynvml is not None and isinstance(exc, pynvml.NVMLError):
            raise GatewayError(f"failed to {action}: {exc}", index=index) from exc
        raise


class NvmlGateway:
    """``DeviceGateway`` backed by pynvml."""

    def __init__(self) -> None:
        self._handles: dict[int, Any] = {}
        self._initialized = False

    @property
    def initialized(self) -> bool:
        return self._initialized

    def initialize(self) -> None:
        if self._initialized:
            return
        if not _HAS_PYNVML:
            raise GatewayError("pynvml module not available; install nvidia-ml-py")
        with _translate_errors("initialize NVML"):
            pynvml.nvmlInit()
        self._initialized = True
        count = self.device_count()
        for i in range(count):
            self._handle(i)
        logger.info("NVML initialized with %d device(s)", count)

    def shutdown(self) -> None:
        if not self._initialized:
            return
        self._handles.clear()
        self._initialized = False
        try:
            pynvml.nvmlShutdown()
        except Exception as exc:
            logger.debug("NVML shutdown failed: %s", exc)

    def _require_session(self) -> None:
        if not self._initialized:
            raise GatewayError("NVML session is not initialized")

    def _handle(self, index: int) -> Any:
        self._require_session()
        handle = self._handles.get(index)
        if handle is not None:
            return handle
        if index < 0 or index >= self.device_count():
            raise DeviceNotFound(f"GPU {index} doesn't exist", index=index)
        with _translate_errors("get handle", index):
            handle = pynvml.nvmlDeviceGetHandleByIndex(index)
        self._handles[index] = handle
        return handle

    def device_count(self) -> int:
        self._require_session()
        with _translate_errors("get device count"):
            return int(pynvml.nvmlDeviceGetCount())

    def name(self, index: int) -> str:
        handle = self._handle(index)
        with _translate_errors("get name", index):
            name = pynvml.nvmlDeviceGetName(handle)
        return name.decode("utf-8") if isinstance(name, bytes) else str(name)

    def power_management_supported(self, index: int) -> bool:
        handle = self._handle(index)
        with _translate_errors("get power management mode", index):
            mode = pynvml.nvmlDeviceGetPowerManagementMode(handle)
        return mode == pynvml.NVML_FEATURE_ENABLED

    def power_limit_mw(self, index: int) -> int:
        handle = self._handle(index)
        with _translate_errors("get current power limit", index):
            return int(pynvml.nvmlDeviceGetPowerManagementLimit(handle))

    def power_limit_constraints_mw(self, index: int) -> tuple[int, int]:
        handle = self._handle(index)
        with _translate_errors("get power limit constraints", index):
            min_mw, max_mw = pynvml.nvmlDeviceGetPowerManagementLimitConstraints(handle)
        return int(min_mw), int(max_mw)

    def power_usage_mw(self, index: int) -> int:
        handle = self._handle(index)
        with _translate_errors("get power usage", index):
            return int(pynvml.nvmlDeviceGetPowerUsage(handle))

    def set_power_limit_mw(self, index: int, value_mw: int) -> None:
        handle = self._handle(index)
        with _translate_errors("set power limit", index):
            pynvml.nvmlDeviceSetPowerManagementLimit(handle, int(value_mw))

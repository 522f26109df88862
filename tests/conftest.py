"""
Shared fixtures for the power control test suite.

No GPU is needed: ``FakeGateway`` stands in for NVML. It records every call,
echoes writes exactly, and can be told to fail specific calls.

Usage:
    pytest tests/
    pytest tests/agents/power_control -k "clamp"
"""

import os
import sys
import tempfile
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

import pytest

# Add the repository root to sys.path so project packages import cleanly
# regardless of how pytest is launched.
project_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(project_root))

# Keep rotating log files out of the working tree. Set before any project
# module creates its logger at import time.
os.environ.setdefault(
    "POWER_CONTROL_LOG_DIR",
    str(Path(tempfile.gettempdir()) / f"power_control_test_logs_{os.getpid()}"),
)

from fastapi.testclient import TestClient  # noqa: E402

from agents.power_control.errors import DeviceNotFound, GatewayError  # noqa: E402
from agents.power_control.main import create_app  # noqa: E402
from agents.power_control.power_control_engine import PowerControlEngine  # noqa: E402

API_KEY = "test-key"


@dataclass
class FakeDevice:
    name: str = "NVIDIA Test GPU"
    limit_mw: int = 250_000
    min_mw: int = 100_000
    max_mw: int = 300_000
    usage_mw: int = 75_000
    supported: bool = True


class FakeGateway:
    """In-memory ``DeviceGateway``.

    ``fail(method, index)`` makes the named call raise; ``index=None`` applies
    the failure to every device. ``delay`` slows each call down so overlapping
    calls can be detected through ``max_active``.
    """

    def __init__(self, devices=None, delay: float = 0.0):
        if devices is None:
            devices = [FakeDevice(name=f"NVIDIA Test GPU {i}") for i in range(2)]
        self.devices = list(devices)
        self.delay = delay
        self.calls = []
        self.failures = {}
        self.initialized = False
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def fail(self, method, index=None, error=None):
        self.failures[(method, index)] = error or GatewayError(f"{method} failed", index=index)

    @property
    def write_calls(self):
        return [args for method, args in self.calls if method == "set_power_limit_mw"]

    def call_names(self):
        return [method for method, _ in self.calls]

    @contextmanager
    def _call(self, method, *args):
        with self._lock:
            self.calls.append((method, args))
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                time.sleep(self.delay)
            index = args[0] if args else None
            error = self.failures.get((method, index)) or self.failures.get((method, None))
            if error is not None:
                raise error
            yield
        finally:
            with self._lock:
                self.active -= 1

    def _device(self, index):
        if index < 0 or index >= len(self.devices):
            raise DeviceNotFound(f"GPU {index} doesn't exist", index=index)
        return self.devices[index]

    def initialize(self):
        with self._call("initialize"):
            self.initialized = True

    def shutdown(self):
        with self._call("shutdown"):
            self.initialized = False

    def device_count(self):
        with self._call("device_count"):
            return len(self.devices)

    def name(self, index):
        with self._call("name", index):
            return self._device(index).name

    def power_management_supported(self, index):
        with self._call("power_management_supported", index):
            return self._device(index).supported

    def power_limit_mw(self, index):
        with self._call("power_limit_mw", index):
            return self._device(index).limit_mw

    def power_limit_constraints_mw(self, index):
        with self._call("power_limit_constraints_mw", index):
            device = self._device(index)
            return device.min_mw, device.max_mw

    def power_usage_mw(self, index):
        with self._call("power_usage_mw", index):
            return self._device(index).usage_mw

    def set_power_limit_mw(self, index, value_mw):
        with self._call("set_power_limit_mw", index, value_mw):
            self._device(index).limit_mw = value_mw


@pytest.fixture
def fake_gateway():
    return FakeGateway()


@pytest.fixture
def engine(fake_gateway):
    engine = PowerControlEngine(fake_gateway, timeout_s=None)
    engine.initialize()
    yield engine
    engine.shutdown()


@pytest.fixture
def client(engine):
    app = create_app(engine, API_KEY)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def auth_headers():
    return {"X-API-Key": API_KEY}

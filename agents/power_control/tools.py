"""
Power Control Tools - Utility functions shared by the API and the CLI.

These helpers delegate to a ``PowerControlEngine`` and add the
refresh-after-write behaviour every request surface expects.
"""

from typing import Any

from common.observability import get_logger

from .errors import GatewayError
from .power_control_engine import PowerControlEngine
from .schemas import BatchOutcome, PowerLimitRequest

logger = get_logger(__name__)


def list_gpus(engine: PowerControlEngine) -> list[dict[str, Any]]:
    """Refresh the inventory and return every device record."""
    engine.refresh()
    return engine.cache.to_list()


def get_gpu(engine: PowerControlEngine, index: int) -> dict[str, Any]:
    """Refresh the inventory and return one device record."""
    engine.refresh()
    return engine.cache.get(index).to_dict()


def apply_power_request(engine: PowerControlEngine, request: PowerLimitRequest) -> BatchOutcome:
    """Dispatch a power limit request, then refresh the inventory (best-effort)."""
    outcome = engine.apply_mode(request)
    try:
        engine.refresh()
    except GatewayError as e:
        logger.warning("Failed to refresh GPU cache: %s", e)
    return outcome

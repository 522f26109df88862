"""
Command line entry point for nvidia-power-control.

    nvidia-power-control <watts>                      set every GPU
    nvidia-power-control --gpu=0:200 --gpu=1:180      set specific GPUs
    nvidia-power-control                              apply config.json, optionally serve the API
"""

from __future__ import annotations

import argparse
import re
import sys
from collections.abc import Sequence

from common.observability import bootstrap_observability
from config import (
    ConfigurationError,
    ConfigurationNotFoundError,
    PowerControlConfig,
    get_config,
    resolve_config_path,
)

from .errors import DeviceNotFound, GatewayError, InvalidMode, PowerControlError
from .main import run_server
from .power_control_engine import DEFAULT_GATEWAY_TIMEOUT_S, PowerControlEngine
from .schemas import MODE_ALL, MODE_MANUAL, BatchOutcome, PowerLimitRequest

_UNSIGNED = re.compile(r"[0-9]+")

EPILOG = """\
examples:
  Set all GPUs to 200 watts:
    nvidia-power-control 200

  Set GPU 0 to 200 watts and GPU 1 to 180 watts:
    nvidia-power-control --gpu=0:200 --gpu=1:180

  Apply config.json and optionally start the API server:
    nvidia-power-control

config.json format:
  {
    "mode": "all",               // "all" or "manual"
    "powerLimit": 250,           // watts, used in "all" mode
    "manualLimits": {            // used in "manual" mode
      "0": 200,
      "1": 180
    },
    "apiKey": "your-secret-key", // required when startAPIServer is true
    "apiPort": 8080,
    "startAPIServer": false
  }
"""


def _positive_watts(value: str) -> int:
    watts = int(value) if _UNSIGNED.fullmatch(value) else 0
    if watts <= 0:
        raise argparse.ArgumentTypeError(f"Invalid power limit: {value} (must be a positive integer)")
    return watts


def parse_gpu_param(value: str) -> tuple[int, int]:
    """Parse ``<index>:<watts>`` as given to ``--gpu``."""
    parts = value.split(":")
    if len(parts) != 2:
        raise argparse.ArgumentTypeError(f"invalid GPU parameter: {value} (expected --gpu=index:limit)")
    try:
        index = int(parts[0])
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid GPU index: {parts[0]}") from None
    if not _UNSIGNED.fullmatch(parts[1]):
        raise argparse.ArgumentTypeError(f"invalid power limit: {parts[1]}")
    return index, int(parts[1])


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="nvidia-power-control",
        description="NVIDIA Power Control - Manage power limits for NVIDIA GPUs",
        epilog=EPILOG,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "watts",
        nargs="?",
        type=_positive_watts,
        help="Power limit in watts applied to every GPU",
    )
    parser.add_argument(
        "--gpu",
        action="append",
        type=parse_gpu_param,
        default=[],
        metavar="INDEX:WATTS",
        help="Power limit for one GPU; may be repeated",
    )
    return parser


def report_outcome(outcome: BatchOutcome, missing_message: str) -> None:
    """Print one line per device touched by ``outcome``, in index order."""
    updated = {record.index: record for record in outcome.updated}
    for index in sorted(set(updated) | set(outcome.failed)):
        if index in updated:
            record = updated[index]
            print(f"GPU {index} ({record.name}): Power limit set to {record.power_limit_watts} W")
            continue
        error = outcome.failed[index]
        if isinstance(error, DeviceNotFound):
            print(missing_message.format(index=index))
        else:
            print(f"GPU {index}: Failed to set power limit: {error}")


def apply_all(engine: PowerControlEngine, watts: int, device_count: int) -> BatchOutcome:
    print(f"Setting all GPUs to {watts} watts")
    outcome = engine.apply_mode(PowerLimitRequest(mode=MODE_ALL, power_limit_watts=watts), device_count)
    report_outcome(outcome, "Error: GPU {index} doesn't exist")
    return outcome


def apply_manual(engine: PowerControlEngine, limits: Sequence[tuple[int, int]], device_count: int) -> BatchOutcome:
    # a repeated index keeps the last value given
    request = PowerLimitRequest(mode=MODE_MANUAL, manual_limits=dict(limits))
    outcome = engine.apply_mode(request, device_count)
    report_outcome(outcome, "Error: GPU {index} doesn't exist")
    return outcome


def apply_config_settings(engine: PowerControlEngine, config: PowerControlConfig, device_count: int) -> BatchOutcome | None:
    """Apply the mode and limits from ``config`` once. Returns None for an unknown mode."""
    if config.mode == MODE_ALL:
        return apply_all(engine, config.power_limit, device_count)
    request = PowerLimitRequest(mode=config.mode, manual_limits=config.manual_limits)
    try:
        outcome = engine.apply_mode(request, device_count)
    except InvalidMode:
        print(f"Invalid mode in config: {config.mode} (must be 'all' or 'manual')")
        return None
    report_outcome(outcome, "Warning: GPU {index} specified in config doesn't exist")
    return outcome


def run_from_config(engine: PowerControlEngine, config: PowerControlConfig, config_path, device_count: int) -> int:
    print(f"Applying power settings from {config_path}")
    apply_config_settings(engine, config, device_count)

    if not config.start_api_server:
        print(f"Applied settings from {config_path}, exiting")
        return 0

    if not config.api_key:
        print("Error: API key is required to start API server")
        print(f"Please add 'apiKey' field to your {config_path} or set 'startAPIServer' to false")
        return 1

    try:
        engine.refresh()
    except GatewayError as e:
        print(f"Failed to initialize NVML cache: {e}")
        return 1

    print("Starting API server mode")
    run_server(engine, config)
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.watts is not None and args.gpu:
        parser.error("a power limit for all GPUs cannot be combined with --gpu")

    config: PowerControlConfig | None = None
    config_path = None
    if args.watts is None and not args.gpu:
        config_path = resolve_config_path()
        try:
            config = get_config(config_path)
        except ConfigurationNotFoundError:
            print(f"No command line arguments and no {config_path} found.")
            print(f"Either provide command line arguments or create a {config_path} file.")
            parser.print_help()
            return 1
        except ConfigurationError as e:
            print(f"Error: {e}")
            return 1

    logger = bootstrap_observability("power_control_cli", level=config.log_level if config else "INFO")
    timeout_s = config.gateway_timeout_seconds if config else DEFAULT_GATEWAY_TIMEOUT_S
    engine = PowerControlEngine(timeout_s=timeout_s)

    try:
        try:
            engine.initialize()
            device_count = engine.device_count()
        except PowerControlError as e:
            logger.error("NVML initialization failed: %s", e)
            print(f"Failed to initialize NVML: {e}")
            return 1

        if args.gpu:
            apply_manual(engine, args.gpu, device_count)
            return 0
        if args.watts is not None:
            apply_all(engine, args.watts, device_count)
            return 0
        return run_from_config(engine, config, config_path, device_count)
    finally:
        engine.shutdown()


if __name__ == "__main__":
    sys.exit(main())

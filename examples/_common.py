from __future__ import annotations

import argparse
import sys
from pathlib import Path

# Add parent directory to path for direct execution
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from scope_config import ScopeSettings, load_config, settings_from_config, setup_logging
from scope_desk import AddressScheme, MeasurementMatrixRow


DEFAULT_CONFIG = Path(__file__).resolve().parent / "scope_desk.json"


def add_common_args(p: argparse.ArgumentParser) -> argparse.ArgumentParser:
    p.add_argument("--config", type=Path, default=DEFAULT_CONFIG, help="Path to JSON settings file")
    p.add_argument("--address", default=None, help="Scope IP (default: connection.default_ip)")
    p.add_argument("--scheme", choices=[s.value for s in AddressScheme], default=None)
    p.add_argument(
        "--driver",
        action="append",
        default=None,
        help="Driver identifier to try (repeatable), e.g. LeCroy.ActiveDSO, visa@py, simulated",
    )
    p.add_argument("-v", "--verbose", action="store_true", help="Also log to the console")
    return p


def load_settings(args: argparse.Namespace) -> ScopeSettings:
    settings = settings_from_config(load_config(args.config))
    if args.address:
        settings.default_ip = args.address
    if args.scheme:
        settings.address_scheme = AddressScheme(args.scheme)
    if args.driver:
        settings.driver_ids = tuple(args.driver)
    if not settings.default_ip.strip():
        raise SystemExit("No IP address given (set --address or connection.default_ip)")
    log_path = setup_logging(settings, console=args.verbose)
    print(f"Logs: {log_path.parent}")
    return settings


def print_matrix(channels: list[str], rows: list[MeasurementMatrixRow]) -> None:
    width = max([len("Measurement")] + [len(r.measurement) for r in rows])
    cell = max([14] + [len(ch) for ch in channels] + [len(c) for r in rows for c in r.cells])
    print(f"{'Measurement':<{width}}  " + "  ".join(f"{ch:>{cell}}" for ch in channels))
    for row in rows:
        print(f"{row.measurement:<{width}}  " + "  ".join(f"{c:>{cell}}" for c in row.cells))

#!/usr/bin/env python3
from __future__ import annotations

import argparse
import sys
from pathlib import Path

import numpy as np

# Add parent directory to path for direct execution
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from _common import add_common_args, load_settings, print_matrix
from scope_config import build_connection
from scope_desk import (
    ALL_CHANNELS,
    ALL_MEASUREMENTS,
    DEFAULT_CHANNELS,
    DEFAULT_MEASUREMENTS,
    MeasurementEngine,
    MeasurementOption,
    expand_selection,
    to_matrix,
)


def parse_args():
    p = add_common_args(argparse.ArgumentParser())
    p.add_argument("--channels", nargs="+", default=["all"], help="Channel ids (C1..C4) or 'all'")
    p.add_argument(
        "--measurements",
        nargs="+",
        default=["all"],
        help="Measurement names (e.g. Mean Frequency 'Rise Time') or 'all'",
    )
    p.add_argument("--seed", type=int, default=None, help="Seed for stub readings")
    return p.parse_args()


def select(names: list[str], options, sentinel, make_extra=None):
    by_id = {o.id.lower(): o for o in options}
    selected = []
    for name in names:
        key = name.strip().lower()
        if key == "all":
            selected.append(sentinel)
        elif key in by_id:
            selected.append(by_id[key])
        elif make_extra is not None:
            selected.append(make_extra(name))
        else:
            raise SystemExit(f"Unknown selection: {name}")
    return expand_selection(options, selected)


def main() -> None:
    args = parse_args()
    settings = load_settings(args)

    channels = select(args.channels, DEFAULT_CHANNELS, ALL_CHANNELS)
    # Names without a slot mapping still get stub readings (live reads give N/A)
    measurements = select(
        args.measurements, DEFAULT_MEASUREMENTS, ALL_MEASUREMENTS,
        make_extra=lambda name: MeasurementOption(name, name),
    )

    with build_connection(settings) as manager:
        if not manager.connect(settings.default_ip):
            print(f"Failed to connect to {settings.default_ip}")
            sys.exit(1)

        engine = MeasurementEngine(manager, rng=np.random.default_rng(args.seed))
        results = engine.fetch_measurements(measurements, channels)

    header, rows = to_matrix(results)
    print_matrix(header, rows)
    print(f"Fetched {len(results)} measurement(s).")


if __name__ == "__main__":
    main()

#!/usr/bin/env python3
from __future__ import annotations

import argparse
import sys
from pathlib import Path

# Add parent directory to path for direct execution
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from _common import add_common_args, load_settings
from scope_config import build_connection


def parse_args():
    return add_common_args(argparse.ArgumentParser()).parse_args()


def main() -> None:
    args = parse_args()
    settings = load_settings(args)
    with build_connection(settings) as manager:
        if not manager.connect(settings.default_ip):
            print(f"Failed to connect to {settings.default_ip}")
            sys.exit(1)
        mode = "live" if manager.has_driver else "stub"
        print(f"Connected to {settings.default_ip} ({mode} mode)")
        print(f"Serial number: {manager.get_serial_number()}")


if __name__ == "__main__":
    main()

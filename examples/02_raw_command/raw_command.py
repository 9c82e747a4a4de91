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
    p = add_common_args(argparse.ArgumentParser())
    p.add_argument("command", help="""Raw command, e.g. "TDIV?" or "VBS? 'return=app.Acquisition.C1.VerScale'" """)
    return p.parse_args()


def main() -> None:
    args = parse_args()
    settings = load_settings(args)
    with build_connection(settings) as manager:
        if not manager.connect(settings.default_ip):
            print(f"Failed to connect to {settings.default_ip}")
            sys.exit(1)
        print(manager.send_command(args.command))


if __name__ == "__main__":
    main()

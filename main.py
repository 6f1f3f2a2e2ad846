#!/usr/bin/env python3
"""
Development launcher for clipwatch.

- Runs the console menu in the foreground
- Ctrl-C stops any active session (merge + clips still run) and exits
- Extra arguments are passed through to clipwatch.cli
"""

import sys

from clipwatch import cli


def main():
    print("[dev] Running clipwatch console (Ctrl-C to exit)")
    try:
        return cli.main(sys.argv[1:])
    finally:
        print("[dev] Exiting dev mode")


if __name__ == "__main__":
    sys.exit(main())

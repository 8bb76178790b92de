#!/usr/bin/env python3
"""
Session Service admin CLI - entry point
"""

import os
import sys

# Make backend modules importable when run as a script
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))


def main():
    from cli_app import SessionAdminCLI

    sys.exit(SessionAdminCLI().run())


if __name__ == "__main__":
    main()

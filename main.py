#!/usr/bin/env python3
"""
drawcapture entrypoint.

Each invocation is one short-lived run; trigger `python main.py run` from
cron (or `python main.py watch`) every few minutes. Environment variables
are loaded from .env when present.
"""
import sys

from dotenv import load_dotenv

load_dotenv()

from drawcapture.cli import main  # noqa: E402

if __name__ == "__main__":
    sys.exit(main())

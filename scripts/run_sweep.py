#!/usr/bin/env python3
"""
Run one waitlist expiry sweep on a running server.

Use this from an external cron when the in-process scheduler is disabled
(SCHEDULER_ENABLED=false), e.g. when running several API workers.

Run:
    python scripts/run_sweep.py
"""

import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from dotenv import load_dotenv
load_dotenv()

import httpx

from clinic_waitlist.client import trigger_sweep
from clinic_waitlist.config import settings


def main():
    print(f"Sweeping expired waitlist offers on {settings.server_base_url}...")
    try:
        expired = trigger_sweep()
    except httpx.HTTPError as exc:
        print(f"ERROR: sweep failed: {exc}")
        sys.exit(1)

    print(f"✓ Expired {expired} waitlist offer(s).")


if __name__ == "__main__":
    main()

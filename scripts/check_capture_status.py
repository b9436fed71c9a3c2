#!/usr/bin/env python3
"""
Quick script to print the schedule state of one lottery/day.
Useful for diagnosing why a slot is still pending without re-running.

Usage (from repo root):
    python scripts/check_capture_status.py [LOTTERY] [YYYY-MM-DD]

Example:
    python scripts/check_capture_status.py PT_RIO 2025-12-29
"""

import os
import sys

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from dotenv import load_dotenv  # noqa: E402

from drawcapture.config import get_lottery, load_lotteries, load_settings  # noqa: E402
from drawcapture.date_utils import Clock  # noqa: E402
from drawcapture.schedule_state import DayState  # noqa: E402
from drawcapture.state_store import create_state_store  # noqa: E402


def check_status(lottery_key: str, date: str = None) -> bool:
    """Print slot states; returns True when nothing is pending."""
    settings = load_settings()
    lottery = get_lottery(load_lotteries(settings=settings), lottery_key)
    clock = Clock(settings.timezone)
    date = date or clock.today()
    state = DayState.load(create_state_store(settings), lottery.key, date, lottery.hours)

    print("=" * 80)
    print(f"🔍 CAPTURE STATUS {lottery.key} {date}")
    print("=" * 80)
    print(f"⏰ Check Time: {clock.now().strftime('%Y-%m-%d %H:%M:%S %Z')}\n")

    for slot in lottery.slots:
        s = state.slot(slot.hour)
        if s.not_applicable:
            icon, label = "➖", f"N/A ({s.not_applicable_reason})"
        elif s.done:
            icon, label = "✅", f"DONE ({s.outcome})"
        else:
            icon, label = "⏳", "PENDING"
        print(f"{icon} {slot.hour}  window {slot.window_start}-{slot.window_end}  {label}")
        print(f"     tries: {s.tries}  last attempt: {s.last_attempt_at or '-'}")
        if s.last_result:
            print(f"     last result: {s.last_result}")

    pending = state.summary()['pending']
    print(f"\n{'✅ Nothing pending' if not pending else '⚠️ Pending: ' + ', '.join(pending)}")
    return not pending


if __name__ == "__main__":
    load_dotenv()
    args = sys.argv[1:]
    ok = check_status(args[0] if args else "PT_RIO", args[1] if len(args) > 1 else None)
    sys.exit(0 if ok else 1)

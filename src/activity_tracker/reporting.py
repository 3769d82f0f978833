"""Simple reporting utilities for CLI output."""

from __future__ import annotations

import math
from datetime import date
from typing import Any

from .models import DailyActiveTime
from .normalization import split_memo


def format_duration(seconds: Any) -> str:
    """Compact duration such as ``45s``, ``1m 30s`` or ``2h 5m``."""
    try:
        value = float(seconds)
    except (TypeError, ValueError):
        return "0s"
    if math.isnan(value) or math.isinf(value) or value < 0:
        return "0s"

    total_seconds = math.floor(value)
    if total_seconds < 60:
        return f"{total_seconds}s"

    minutes, secs = divmod(total_seconds, 60)
    if minutes < 60:
        return f"{minutes}m {secs}s" if secs else f"{minutes}m"

    hours, minutes = divmod(minutes, 60)
    return f"{hours}h {minutes}m" if minutes else f"{hours}h"


class SummaryPrinter:
    """Render human-readable summaries in the console."""

    def __init__(self, queries) -> None:
        self.queries = queries

    def print_daily_summary(self, day: date) -> None:
        rows = self.queries.get_all_users_active_time_for_date(day)
        if not any(row.sessions for row in rows):
            print("No active time recorded for the selected day.")
            return

        print(f"Active time for {day.isoformat()}")
        print("-" * 40)
        for row in sorted(rows, key=lambda item: item.active_seconds, reverse=True):
            marker = "*" if self.queries.is_user_currently_active(row.user_id) else " "
            print(f"{marker} {row.user_name:<28} {format_duration(row.active_seconds):>9}")

        for row in rows:
            if not row.sessions:
                continue
            print()
            print(f"{row.user_name}:")
            for line in session_lines(row):
                print(f"  {line}")


def session_lines(row: DailyActiveTime) -> list[str]:
    lines: list[str] = []
    for session in row.sessions:
        project, description = split_memo(session.memo)
        start = session.start_time.strftime("%H:%M")
        end = session.end_time.strftime("%H:%M") if session.end_time else "now"
        label = f"[{project}] {description}" if project else description or "(no memo)"
        lines.append(
            f"{start}-{end:<5} {format_duration(session.duration_seconds):>8}  {label[:50]}"
        )
    return lines

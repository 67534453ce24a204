"""
formatting.py — Display strings for durations and speeds.

Only used at the presentation boundary: ranking always works on raw
milliseconds and never parses these strings back.
"""

from __future__ import annotations

UNKNOWN_DURATION = "--:--:--"
UNKNOWN_SPEED = "--"
ZERO_SPEED = "0.00"

MS_PER_HOUR = 3_600_000


def format_ms_to_display(ms: int | None) -> str:
    """Format milliseconds as HH:MM:SS.cc ('00:00:00.00' for ≤ 0)."""
    if ms is None or ms <= 0:
        return "00:00:00.00"
    hours = ms // MS_PER_HOUR
    minutes = (ms % MS_PER_HOUR) // 60_000
    seconds = (ms % 60_000) // 1000
    hundredths = (ms % 1000) // 10
    return f"{hours:02d}:{minutes:02d}:{seconds:02d}.{hundredths:02d}"


def format_duration(ms: int | None) -> str:
    """Format milliseconds as HH:MM:SS, hundredths dropped."""
    return format_ms_to_display(ms).split(".")[0]


def format_time_behind(ms: int | None) -> str:
    if ms is None or ms <= 0:
        return ""
    return f"+{format_duration(ms)}"


def calculate_speed(distance_km: float, time_ms: int | None) -> str:
    """Average speed in km/h with two decimals."""
    if time_ms is None or time_ms <= 0 or distance_km <= 0:
        return ZERO_SPEED
    hours = time_ms / MS_PER_HOUR
    return f"{distance_km / hours:.2f}"

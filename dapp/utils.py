"""Formatting helpers shared by the read, query and reconciliation layers."""

from __future__ import annotations

import time
from typing import Optional

from .types import TimeRemaining

WEI_PER_ETHER = 10**18


def format_ether(wei: int) -> str:
    """Render a wei amount as a decimal ether string without trailing zeros."""

    value = int(wei)
    sign = "-" if value < 0 else ""
    whole, fraction = divmod(abs(value), WEI_PER_ETHER)
    if fraction == 0:
        return f"{sign}{whole}"
    fraction_digits = f"{fraction:018d}".rstrip("0")
    return f"{sign}{whole}.{fraction_digits}"


def format_eth_amount(wei: int) -> str:
    return f"{format_ether(wei)} ETH"


def truncate_address(address: str) -> str:
    return f"{address[:6]}...{address[-4:]}"


def format_relative_time(timestamp: int, now: Optional[float] = None) -> str:
    current = int(now if now is not None else time.time())
    diff = current - int(timestamp)

    if diff < 60:
        return "just now"
    if diff < 3600:
        return f"{diff // 60} min ago"
    if diff < 86400:
        return f"{diff // 3600} hours ago"
    if diff < 604800:
        return f"{diff // 86400} days ago"
    return f"{diff // 604800} weeks ago"


def time_remaining(deadline: int, now: Optional[float] = None) -> TimeRemaining:
    current = int(now if now is not None else time.time())
    remaining = int(deadline) - current
    if remaining <= 0:
        return TimeRemaining(hours=0, minutes=0, seconds=0)
    return TimeRemaining(
        hours=remaining // 3600,
        minutes=(remaining % 3600) // 60,
        seconds=remaining % 60,
    )

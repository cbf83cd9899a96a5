# utils.py

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Optional


def log(msg: str) -> None:
    """
    Simple timestamped logger used across the project.
    """
    ts = datetime.now().isoformat(timespec="seconds")
    print(f"[{ts}] {msg}")


def format_kwh(value: Optional[Decimal]) -> str:
    """
    Readings are shown with 3 decimals (Wh resolution), the way the meters
    report them on their displays.
    """
    if value is None:
        return "-"
    return f"{value:.3f} kWh"


def format_dt(dt_obj):
    """
    Formatting helper used by main.py
    """
    if dt_obj is None:
        return ""
    return dt_obj.isoformat(sep=" ", timespec="seconds")

"""Dollar amounts compared as integer cents."""

from __future__ import annotations


def to_cents(amount: float) -> int:
    return round(float(amount) * 100)


def from_cents(cents: int) -> float:
    return cents / 100

"""Datetime helpers."""

from __future__ import annotations

from datetime import datetime, timedelta

import pendulum


def utcnow() -> datetime:
    """Naive UTC timestamp, the form stored in every table."""
    return pendulum.now("UTC").naive()


def hours_ago(hours: float, *, now: datetime | None = None) -> datetime:
    return (now or utcnow()) - timedelta(hours=hours)


def days_ago(days: float, *, now: datetime | None = None) -> datetime:
    return (now or utcnow()) - timedelta(days=days)


def format_timestamp(value: datetime | None) -> str:
    if value is None:
        return "-"
    return value.strftime("%Y-%m-%d %H:%M UTC")

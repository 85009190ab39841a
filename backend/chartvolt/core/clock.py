"""Naive-UTC clock shared by models and services (columns are TIMESTAMP WITHOUT TIME ZONE)."""

from datetime import datetime, UTC


def utcnow() -> datetime:
    return datetime.now(UTC).replace(tzinfo=None)

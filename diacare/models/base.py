"""Shared Pydantic base models and utilities."""

from __future__ import annotations

from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def utc_now_ms() -> int:
    """Current wall-clock time as integer epoch milliseconds."""
    return int(utc_now().timestamp() * 1000)


class DiacareBase(BaseModel):
    """Base model with shared config for all DiaCare schemas.

    Attributes are snake_case in Python and camelCase on the wire, which is
    what the mobile app sends and expects back.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )

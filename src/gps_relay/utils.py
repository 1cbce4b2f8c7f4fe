# Copyright 2025 Gowtham Rao <rao@ohdsi.org>
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
"""Utility functions for coercing loosely typed upstream values."""

import math
import re
from collections.abc import Callable
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

_NON_DIGITS = re.compile(r"[^0-9]")

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Default clock: the current aware UTC time."""
    return datetime.now(timezone.utc)


def is_numeric(value: Any) -> bool:
    """Return True for finite numbers and strings that parse as one."""
    if isinstance(value, bool):
        return False
    if isinstance(value, (int, float)):
        return math.isfinite(value)
    if isinstance(value, str):
        try:
            return math.isfinite(float(value.strip()))
        except ValueError:
            return False
    return False


def to_float(value: Any, default: float = 0.0) -> float:
    """Coerce a value to float, falling back to `default` when it is not numeric."""
    if isinstance(value, bool):
        return float(value)
    if is_numeric(value):
        return float(value.strip() if isinstance(value, str) else value)
    return default


def is_blank(value: Any) -> bool:
    return value is None or str(value).strip() == ""


def digits_only(value: Any) -> str:
    """Strip every non-digit character."""
    return _NON_DIGITS.sub("", "" if value is None else str(value))


def round_half_up(value: float, ndigits: int = 0) -> float:
    """Round like a person would: 0.5 goes away from zero, not to even."""
    try:
        quantum = Decimal(1).scaleb(-ndigits)
        return float(Decimal(str(value)).quantize(quantum, rounding=ROUND_HALF_UP))
    except InvalidOperation:
        return value


def round_to_int(value: Any) -> int:
    return int(round_half_up(to_float(value)))


def parse_timestamp(value: Any) -> datetime:
    """Parse an upstream capture time into an aware UTC datetime.

    Numbers (and numeric strings) are epoch seconds. Other strings are
    ISO 8601 date-times; naive values are taken to be UTC.

    Raises:
        ValueError: If the value cannot be interpreted as a point in time.
    """
    if is_numeric(value):
        try:
            return datetime.fromtimestamp(to_float(value), tz=timezone.utc)
        except (OverflowError, OSError) as e:
            raise ValueError(f"Epoch out of range: {value!r}") from e

    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"Not a date-time: {value!r}")

    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)

from __future__ import annotations

import shlex
from datetime import UTC, datetime


def utc_now() -> datetime:
    return datetime.now(UTC)


def utc_now_iso() -> str:
    return utc_now().isoformat()


def parse_iso(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def age_seconds(value: str, now: datetime | None = None) -> float:
    return ((now or utc_now()) - parse_iso(value)).total_seconds()


def join_args(args: list[str]) -> str:
    return shlex.join(str(arg) for arg in args)


def format_number(value: int) -> str:
    return f"{value:,}"

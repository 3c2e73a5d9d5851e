from __future__ import annotations
from datetime import datetime, timezone
from typing import Callable

Clock = Callable[[], datetime]


def utc_now() -> datetime:
	return datetime.now(timezone.utc)


def to_iso(dt: datetime) -> str:
	return dt.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def to_epoch_ms(dt: datetime) -> int:
	return int(dt.timestamp() * 1000)


def from_epoch_ms(ms: int) -> datetime:
	return datetime.fromtimestamp(ms / 1000, tz=timezone.utc)

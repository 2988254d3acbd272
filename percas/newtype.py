"""Small value types used by the configuration: durations and disk throttling."""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from enum import Enum
from typing import Any

_ISO_DURATION = re.compile(
    r"(?P<sign>[+-]?)PT"
    r"(?:(?P<hours>\d+(?:[.,]\d+)?)H)?"
    r"(?:(?P<minutes>\d+(?:[.,]\d+)?)M)?"
    r"(?:(?P<seconds>\d+(?:[.,]\d+)?)S)?",
    re.IGNORECASE,
)
_FRIENDLY_DURATION = re.compile(r"(?:\s*\d+(?:\.\d+)?\s*[a-zµ]+\s*,?)+\s*", re.IGNORECASE)
_FRIENDLY_PART = re.compile(r"(\d+(?:\.\d+)?)\s*([a-zµ]+)", re.IGNORECASE)

_US_PER_SECOND = 1_000_000
_US_PER_MINUTE = 60 * _US_PER_SECOND
_US_PER_HOUR = 60 * _US_PER_MINUTE

_UNIT_MICROSECONDS: dict[str, Decimal] = {}
for _names, _size in (
    (("h", "hr", "hrs", "hour", "hours"), Decimal(_US_PER_HOUR)),
    (("m", "min", "mins", "minute", "minutes"), Decimal(_US_PER_MINUTE)),
    (("s", "sec", "secs", "second", "seconds"), Decimal(_US_PER_SECOND)),
    (("ms", "msec", "msecs", "millisecond", "milliseconds"), Decimal(1000)),
    (("us", "µs", "usec", "usecs", "microsecond", "microseconds"), Decimal(1)),
    (("ns", "nsec", "nsecs", "nanosecond", "nanoseconds"), Decimal("0.001")),
):
    for _name in _names:
        _UNIT_MICROSECONDS[_name] = _size


def _from_microseconds(sign: str, total: Decimal) -> timedelta:
    micros = int(total)  # truncates sub-microsecond precision
    return timedelta(microseconds=-micros if sign == "-" else micros)


def parse_duration(text: str) -> timedelta:
    """Parse an ISO 8601 time duration ("PT1M30S") or a friendly one ("1m 30s")."""
    if not isinstance(text, str):
        raise ValueError(f"expected a duration string, got {text!r}")
    stripped = text.strip()

    iso = _ISO_DURATION.fullmatch(stripped)
    if iso is not None:
        parts = [iso.group(unit) for unit in ("hours", "minutes", "seconds")]
        if all(part is None for part in parts):
            raise ValueError(f"invalid duration {text!r}: no time units given")
        total = Decimal(0)
        for part, size in zip(parts, (_US_PER_HOUR, _US_PER_MINUTE, _US_PER_SECOND)):
            if part is not None:
                total += Decimal(part.replace(",", ".")) * size
        return _from_microseconds(iso.group("sign"), total)

    sign = ""
    if stripped[:1] in ("+", "-"):
        sign, stripped = stripped[0], stripped[1:]
    if not stripped or not _FRIENDLY_DURATION.fullmatch(stripped):
        raise ValueError(f"invalid duration {text!r}")
    total = Decimal(0)
    for amount, unit in _FRIENDLY_PART.findall(stripped):
        size = _UNIT_MICROSECONDS.get(unit.lower())
        if size is None:
            raise ValueError(f"invalid duration {text!r}: unknown unit {unit!r}")
        total += Decimal(amount) * size
    return _from_microseconds(sign, total)


def format_duration(value: timedelta) -> str:
    """Format a duration in ISO 8601 form, using hours, minutes and seconds."""
    if not isinstance(value, timedelta):
        raise ValueError(f"expected a timedelta, got {value!r}")
    total = value // timedelta(microseconds=1)
    if total == 0:
        return "PT0S"
    sign = "-" if total < 0 else ""
    hours, rest = divmod(abs(total), _US_PER_HOUR)
    minutes, rest = divmod(rest, _US_PER_MINUTE)
    seconds, micros = divmod(rest, _US_PER_SECOND)

    out = [sign, "PT"]
    if hours:
        out.append(f"{hours}H")
    if minutes:
        out.append(f"{minutes}M")
    if seconds or micros:
        fraction = f".{micros:06d}".rstrip("0") if micros else ""
        out.append(f"{seconds}{fraction}S")
    return "".join(out)


def _positive(value: Any, name: str) -> int | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValueError(f"`{name}` must be a positive integer, got {value!r}")
    return value


def _reject_unknown(data: Mapping[str, Any], allowed: tuple[str, ...]) -> None:
    for key in data:
        if key not in allowed:
            expected = ", ".join(f"`{name}`" for name in allowed)
            raise ValueError(f"unknown field `{key}`, expected one of {expected}")


class IopsMode(Enum):
    """How a device counts I/O operations."""

    PER_IO = "per_io"
    PER_IO_SIZE = "per_io_size"


@dataclass(frozen=True)
class IopsCounter:
    """Counts one operation per I/O, or one per `size` bytes of each I/O."""

    mode: IopsMode = IopsMode.PER_IO
    size: int | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "mode", IopsMode(self.mode))
        if self.mode is IopsMode.PER_IO_SIZE:
            if self.size is None:
                raise ValueError("missing field `size` for mode `per_io_size`")
            _positive(self.size, "size")
        elif self.size is not None:
            raise ValueError("mode `per_io` takes no `size`")

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> IopsCounter:
        if not isinstance(data, Mapping):
            raise ValueError(f"expected a table for the iops counter, got {data!r}")
        name = data.get("mode")
        if name is None:
            raise ValueError("missing field `mode`")
        try:
            mode = IopsMode(name)
        except ValueError:
            raise ValueError(
                f"unknown variant `{name}`, expected `per_io` or `per_io_size`"
            ) from None
        allowed = ("mode", "size") if mode is IopsMode.PER_IO_SIZE else ("mode",)
        _reject_unknown(data, allowed)
        return cls(mode, data.get("size"))

    def to_dict(self) -> dict[str, Any]:
        if self.mode is IopsMode.PER_IO_SIZE:
            return {"mode": self.mode.value, "size": self.size}
        return {"mode": self.mode.value}


_THROTTLE_LIMITS = ("write_iops", "read_iops", "write_throughput", "read_throughput")


@dataclass(frozen=True, kw_only=True)
class DiskThrottle:
    """Limits on the disk device's operations and throughput."""

    write_iops: int | None = None
    read_iops: int | None = None
    write_throughput: int | None = None
    read_throughput: int | None = None
    iops_counter: IopsCounter

    def __post_init__(self) -> None:
        for name in _THROTTLE_LIMITS:
            _positive(getattr(self, name), name)
        if not isinstance(self.iops_counter, IopsCounter):
            raise ValueError(f"`iops_counter` must be an IopsCounter, got {self.iops_counter!r}")

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> DiskThrottle:
        if not isinstance(data, Mapping):
            raise ValueError(f"expected a table for the disk throttle, got {data!r}")
        _reject_unknown(data, (*_THROTTLE_LIMITS, "iops_counter"))
        counter = data.get("iops_counter")
        if counter is None:
            raise ValueError("missing field `iops_counter`")
        limits = {name: data.get(name) for name in _THROTTLE_LIMITS}
        return cls(**limits, iops_counter=IopsCounter.from_dict(counter))

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            name: getattr(self, name)
            for name in _THROTTLE_LIMITS
            if getattr(self, name) is not None
        }
        result["iops_counter"] = self.iops_counter.to_dict()
        return result
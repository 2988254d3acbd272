"""A hybrid cache engine: a FIFO memory tier over a capacity-bounded disk tier."""

from __future__ import annotations

import asyncio
import dataclasses
import hashlib
import logging
import math
import os
import struct
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from pathlib import Path

import psutil

from percas.newtype import DiskThrottle, IopsMode

logger = logging.getLogger(__name__)

DEFAULT_MEMORY_CAPACITY_FACTOR = 0.8

_MAGIC = b"PCE1"
_HEADER = struct.Struct(">4sI")
_SUFFIX = ".entry"


class EngineError(Exception):
    """Raised when the cache engine cannot be opened or used."""


@dataclass
class CacheStatistics:
    """Counters of the engine's activity since it was opened."""

    memory_hits: int = 0
    disk_hits: int = 0
    misses: int = 0
    inserts: int = 0
    removes: int = 0
    memory_evictions: int = 0
    disk_evictions: int = 0
    disk_bytes_written: int = 0
    disk_bytes_read: int = 0


class _RateLimiter:
    def __init__(self, rate: int) -> None:
        self._rate = rate
        self._next = time.monotonic()
        self._lock = threading.Lock()

    def reserve(self, amount: float) -> float:
        """Reserve `amount` units and return how long to wait before using them."""
        with self._lock:
            now = time.monotonic()
            start = max(now, self._next)
            self._next = start + amount / self._rate
            return start - now


class _Throttle:
    def __init__(self, config: DiskThrottle) -> None:
        def limiter(rate: int | None) -> _RateLimiter | None:
            return None if rate is None else _RateLimiter(rate)

        self._counter = config.iops_counter
        self._read_iops = limiter(config.read_iops)
        self._write_iops = limiter(config.write_iops)
        self._read_throughput = limiter(config.read_throughput)
        self._write_throughput = limiter(config.write_throughput)

    def _ios(self, nbytes: int) -> int:
        if self._counter.mode is IopsMode.PER_IO_SIZE:
            return max(1, math.ceil(nbytes / self._counter.size))
        return 1

    def _delay(self, iops: _RateLimiter | None, bandwidth: _RateLimiter | None, nbytes: int) -> float:
        delays = [0.0]
        if iops is not None:
            delays.append(iops.reserve(self._ios(nbytes)))
        if bandwidth is not None:
            delays.append(bandwidth.reserve(nbytes))
        return max(delays)

    def read_delay(self, nbytes: int) -> float:
        return self._delay(self._read_iops, self._read_throughput, nbytes)

    def write_delay(self, nbytes: int) -> float:
        return self._delay(self._write_iops, self._write_throughput, nbytes)


def _entry_name(key: bytes) -> str:
    return hashlib.sha256(key).hexdigest() + _SUFFIX


def _encode_entry(key: bytes, value: bytes) -> bytes:
    return _HEADER.pack(_MAGIC, len(key)) + key + value


def _decode_entry(data: bytes) -> tuple[bytes, bytes]:
    if len(data) < _HEADER.size:
        raise ValueError("truncated entry header")
    magic, key_len = _HEADER.unpack_from(data)
    if magic != _MAGIC or _HEADER.size + key_len > len(data):
        raise ValueError("malformed entry")
    key_end = _HEADER.size + key_len
    return data[_HEADER.size:key_end], data[key_end:]


class CacheEngine:
    """Key-value cache writing every insertion to both memory and disk."""

    def __init__(
        self,
        data_dir: Path,
        memory_capacity: int,
        disk_capacity: int,
        disk_throttle: DiskThrottle | None,
    ) -> None:
        self._data_dir = data_dir
        self._memory_capacity = memory_capacity
        self._disk_capacity = disk_capacity
        self._throttle = None if disk_throttle is None else _Throttle(disk_throttle)
        self._lock = threading.Lock()
        self._memory: OrderedDict[bytes, bytes] = OrderedDict()
        self._memory_used = 0
        self._disk: OrderedDict[bytes, int] = OrderedDict()
        self._disk_used = 0
        self._stats = CacheStatistics()
        self._closed = False

    @classmethod
    async def try_new(
        cls,
        data_dir: str | os.PathLike[str],
        memory_capacity: int | None,
        disk_capacity: int,
        disk_throttle: DiskThrottle | None,
    ) -> CacheEngine:
        """Open (and quietly recover) a cache stored under `data_dir`."""
        path = Path(data_dir)
        try:
            path.mkdir(parents=True, exist_ok=True)
        except OSError:
            pass
        if not path.is_dir():
            raise EngineError(f"failed to create data dir: {path}")
        if memory_capacity is None:
            memory_capacity = psutil.Process(os.getpid()).memory_info().rss
        memory_budget = int(memory_capacity * DEFAULT_MEMORY_CAPACITY_FACTOR)
        engine = cls(path, memory_budget, disk_capacity, disk_throttle)
        try:
            await asyncio.to_thread(engine._recover)
        except OSError as exc:
            raise EngineError(str(exc)) from exc
        return engine

    def _recover(self) -> None:
        files = []
        for entry in self._data_dir.iterdir():
            if entry.name.endswith(_SUFFIX) and entry.is_file():
                files.append((entry.stat().st_mtime_ns, entry.name, entry))
        for _, _, entry in sorted(files):
            try:
                key, _ = _decode_entry(entry.read_bytes())
                if _entry_name(key) != entry.name:
                    raise ValueError("entry name does not match its key")
            except (OSError, ValueError):
                entry.unlink(missing_ok=True)
                continue
            size = entry.stat().st_size
            self._disk[key] = size
            self._disk_used += size
        with self._lock:
            self._evict_disk(0)

    def _check_open(self) -> None:
        if self._closed:
            raise EngineError("cache engine is closed")

    def _path(self, key: bytes) -> Path:
        return self._data_dir / _entry_name(key)

    def _insert_memory(self, key: bytes, value: bytes) -> None:
        self._remove_memory(key)
        weight = len(key) + len(value)
        if weight > self._memory_capacity:
            return
        while self._memory_used + weight > self._memory_capacity:
            old_key, old_value = self._memory.popitem(last=False)
            self._memory_used -= len(old_key) + len(old_value)
            self._stats.memory_evictions += 1
        self._memory[key] = value
        self._memory_used += weight

    def _remove_memory(self, key: bytes) -> bool:
        value = self._memory.pop(key, None)
        if value is None:
            return False
        self._memory_used -= len(key) + len(value)
        return True

    def _remove_disk(self, key: bytes) -> bool:
        size = self._disk.pop(key, None)
        if size is None:
            return False
        self._disk_used -= size
        self._path(key).unlink(missing_ok=True)
        return True

    def _evict_disk(self, incoming: int) -> None:
        while self._disk and self._disk_used + incoming > self._disk_capacity:
            old_key = next(iter(self._disk))
            self._remove_disk(old_key)
            self._stats.disk_evictions += 1

    async def get(self, key: bytes) -> bytes | None:
        """Return the value stored under `key`, or None when it is not cached."""
        key = bytes(key)
        with self._lock:
            self._check_open()
            value = self._memory.get(key)
            if value is not None:
                self._stats.memory_hits += 1
                return value
            on_disk = key in self._disk
        value = await asyncio.to_thread(self._read_disk, key) if on_disk else None
        with self._lock:
            if value is None:
                self._stats.misses += 1
                return None
            self._stats.disk_hits += 1
            if key in self._disk:
                self._insert_memory(key, value)
            return value

    def _read_disk(self, key: bytes) -> bytes | None:
        path = self._path(key)
        try:
            size = path.stat().st_size
            if self._throttle is not None:
                delay = self._throttle.read_delay(size)
                if delay > 0:
                    time.sleep(delay)
            stored_key, value = _decode_entry(path.read_bytes())
        except (OSError, ValueError) as exc:
            logger.debug("failed to read cache entry %s: %s", path, exc)
            return None
        if stored_key != key:
            return None
        with self._lock:
            self._stats.disk_bytes_read += size
        return value

    def put(self, key: bytes, value: bytes) -> None:
        """Insert `value` under `key` in memory and on disk."""
        key, value = bytes(key), bytes(value)
        data = _encode_entry(key, value)
        if self._throttle is not None and len(data) <= self._disk_capacity:
            delay = self._throttle.write_delay(len(data))
            if delay > 0:
                time.sleep(delay)
        with self._lock:
            self._check_open()
            self._stats.inserts += 1
            self._insert_memory(key, value)
            self._remove_disk(key)
            if len(data) > self._disk_capacity:
                return
            self._evict_disk(len(data))
            path = self._path(key)
            tmp = path.with_name(path.name + ".tmp")
            try:
                tmp.write_bytes(data)
                os.replace(tmp, path)
            except OSError as exc:
                tmp.unlink(missing_ok=True)
                logger.warning("failed to write cache entry %s: %s", path, exc)
                return
            self._disk[key] = len(data)
            self._disk_used += len(data)
            self._stats.disk_bytes_written += len(data)

    def delete(self, key: bytes) -> None:
        """Remove `key` from both tiers; missing keys are ignored."""
        key = bytes(key)
        with self._lock:
            self._check_open()
            removed_memory = self._remove_memory(key)
            removed_disk = self._remove_disk(key)
            if removed_memory or removed_disk:
                self._stats.removes += 1

    def capacity(self) -> int:
        """The disk capacity in bytes."""
        return self._disk_capacity

    def statistics(self) -> CacheStatistics:
        """A snapshot of the engine's counters."""
        with self._lock:
            return dataclasses.replace(self._stats)

    def close(self) -> None:
        """Drop the memory tier; disk entries stay for the next open."""
        with self._lock:
            self._closed = True
            self._memory.clear()
            self._memory_used = 0

    def __enter__(self) -> CacheEngine:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()
import pytest

from percas.engine import CacheEngine, EngineError
from percas.newtype import DiskThrottle, IopsCounter, IopsMode


@pytest.mark.asyncio
async def test_get(tmp_path):
    engine = await CacheEngine.try_new(tmp_path, 512 * 1024, 1024 * 1024, None)
    engine.put(b"foo", b"bar")
    assert await engine.get(b"foo") == bytes([98, 97, 114])


@pytest.mark.asyncio
async def test_missing_key_returns_none(tmp_path):
    engine = await CacheEngine.try_new(tmp_path, 1024, 1024 * 1024, None)
    assert await engine.get(b"absent") is None
    assert engine.statistics().misses == 1


@pytest.mark.asyncio
async def test_delete(tmp_path):
    engine = await CacheEngine.try_new(tmp_path, 1024, 1024 * 1024, None)
    engine.put(b"k", b"v")
    engine.delete(b"k")
    assert await engine.get(b"k") is None
    assert engine.statistics().removes == 1


@pytest.mark.asyncio
async def test_overwrite(tmp_path):
    engine = await CacheEngine.try_new(tmp_path, 0, 1024 * 1024, None)
    engine.put(b"k", b"one")
    engine.put(b"k", b"two")
    assert await engine.get(b"k") == b"two"


@pytest.mark.asyncio
async def test_zero_memory_reads_from_disk(tmp_path):
    engine = await CacheEngine.try_new(tmp_path, 0, 1024 * 1024, None)
    engine.put(b"key", b"value")
    assert await engine.get(b"key") == b"value"
    stats = engine.statistics()
    assert stats.disk_hits == 1
    assert stats.memory_hits == 0


@pytest.mark.asyncio
async def test_memory_hit_counted(tmp_path):
    engine = await CacheEngine.try_new(tmp_path, 1024, 1024 * 1024, None)
    engine.put(b"key", b"value")
    await engine.get(b"key")
    assert engine.statistics().memory_hits == 1


@pytest.mark.asyncio
async def test_recovers_after_reopen(tmp_path):
    engine = await CacheEngine.try_new(tmp_path, 1024, 1024 * 1024, None)
    engine.put(b"persist", b"me")
    engine.close()
    reopened = await CacheEngine.try_new(tmp_path, 1024, 1024 * 1024, None)
    assert await reopened.get(b"persist") == b"me"


@pytest.mark.asyncio
async def test_corrupt_entries_are_dropped_quietly(tmp_path):
    (tmp_path / ("0" * 64 + ".entry")).write_bytes(b"garbage")
    engine = await CacheEngine.try_new(tmp_path, 1024, 1024 * 1024, None)
    assert not (tmp_path / ("0" * 64 + ".entry")).exists()
    assert await engine.get(b"anything") is None


@pytest.mark.asyncio
async def test_disk_evicts_oldest_first(tmp_path):
    engine = await CacheEngine.try_new(tmp_path, 0, 300, None)
    for name in (b"a", b"b", b"c"):
        engine.put(name, b"x" * 100)
    assert await engine.get(b"a") is None
    assert await engine.get(b"c") == b"x" * 100
    assert engine.statistics().disk_evictions >= 1


@pytest.mark.asyncio
async def test_oversized_entry_is_not_stored(tmp_path):
    engine = await CacheEngine.try_new(tmp_path, 0, 16, None)
    engine.put(b"big", b"y" * 100)
    assert await engine.get(b"big") is None


@pytest.mark.asyncio
async def test_capacity(tmp_path):
    engine = await CacheEngine.try_new(tmp_path, 10, 4096, None)
    assert engine.capacity() == 4096


@pytest.mark.asyncio
async def test_default_memory_capacity(tmp_path):
    engine = await CacheEngine.try_new(tmp_path, None, 4096, None)
    engine.put(b"a", b"b")
    assert await engine.get(b"a") == b"b"


@pytest.mark.asyncio
async def test_create_dir_failure(tmp_path):
    blocker = tmp_path / "file"
    blocker.write_text("x")
    with pytest.raises(EngineError, match="failed to create data dir"):
        await CacheEngine.try_new(blocker / "data", 1024, 1024, None)


@pytest.mark.asyncio
async def test_closed_engine_rejects_use(tmp_path):
    engine = await CacheEngine.try_new(tmp_path, 1024, 1024, None)
    engine.close()
    with pytest.raises(EngineError):
        engine.put(b"a", b"b")
    with pytest.raises(EngineError):
        await engine.get(b"a")


@pytest.mark.asyncio
async def test_throttled_engine_stores_values(tmp_path):
    throttle = DiskThrottle(
        write_iops=10_000,
        read_throughput=10_000_000,
        iops_counter=IopsCounter(IopsMode.PER_IO_SIZE, 4096),
    )
    engine = await CacheEngine.try_new(tmp_path, 0, 1024 * 1024, throttle)
    engine.put(b"t", b"value")
    assert await engine.get(b"t") == b"value"
    assert engine.statistics().disk_bytes_written > 0
"""Tests du buffer d'écriture et du cache de dernière valeur."""

import asyncio

from piservice.config.computation_config import ComputationConfig
from piservice.core.database import MemoryPrecisionStore, SQLitePrecisionStore
from piservice.core.dead_letter import FileDeadLetterLog
from piservice.core.errors import StorageError, TransientStorageError, UniqueConflictError
from piservice.core.models import PendingWrite, PrecisionRecord, Provenance
from piservice.core.write_buffer import LatestValueCache, WriteBuffer


def pi_like(precision: int) -> str:
    return "3" if precision == 0 else "3." + "1" * precision


def pending(precision: int) -> PendingWrite:
    return PendingWrite(precision, pi_like(precision))


class ConflictOnBatchStore(MemoryPrecisionStore):
    """Rejette en bloc tout lot contenant une précision déjà présente."""

    def __init__(self):
        super().__init__()
        self.calls = 0

    async def bulk_upsert(self, records):
        self.calls += 1
        if any(r.precision in self.records for r in records):
            raise UniqueConflictError("UNIQUE constraint failed")
        await super().bulk_upsert(records)


class FlakyStore(MemoryPrecisionStore):
    """Échoue `failures` fois avec une erreur passagère."""

    def __init__(self, failures: int):
        super().__init__()
        self.failures = failures

    async def bulk_upsert(self, records):
        if self.failures > 0:
            self.failures -= 1
            raise TransientStorageError("database is locked")
        await super().bulk_upsert(records)


class BrokenStore(MemoryPrecisionStore):
    async def bulk_upsert(self, records):
        raise StorageError("disk full")

    async def find_highest_precision(self):
        raise StorageError("disk full")


class GatedStore(MemoryPrecisionStore):
    """Bloque les écritures jusqu'à ce que `gate` soit levée."""

    def __init__(self):
        super().__init__()
        self.gate = asyncio.Event()

    async def bulk_upsert(self, records):
        await self.gate.wait()
        await super().bulk_upsert(records)


class TestLatestValueCache:
    """Cache monotone"""

    def test_empty(self):
        assert LatestValueCache().get() is None

    def test_never_moves_backwards(self):
        cache = LatestValueCache()
        assert cache.update("3.14", 2)
        assert not cache.update("3.1", 1)
        assert cache.get().precision == 2
        assert cache.update("3.141", 3)
        assert cache.get().value == "3.141"
        assert cache.get().cached_at is not None

    def test_clear(self):
        cache = LatestValueCache()
        cache.update("3.14", 2)
        cache.clear()
        assert cache.get() is None


class TestFlush:
    """Écriture par lots"""

    def test_flush_triggered_when_batch_is_full(self):
        store = MemoryPrecisionStore()
        buffer = WriteBuffer(store, ComputationConfig(write_batch_size=2))

        async def scenario():
            assert buffer.enqueue(pending(10)) is None
            task = buffer.enqueue(pending(20))
            assert task is not None
            await task

        asyncio.run(scenario())
        assert set(store.records) == {10, 20}
        assert len(buffer) == 0
        assert buffer.cache.get().precision == 20
        assert buffer.stats["flushes"] == 1
        assert buffer.stats["flushed_values"] == 2

    def test_empty_flush_is_noop(self):
        buffer = WriteBuffer(MemoryPrecisionStore(), ComputationConfig())
        assert asyncio.run(buffer.flush()) is False

    def test_single_flight(self):
        """Un second flush pendant le premier ne fait rien; le lot en cours reste visible."""
        store = GatedStore()
        buffer = WriteBuffer(store, ComputationConfig())

        async def scenario():
            buffer.enqueue(pending(10))
            first = asyncio.create_task(buffer.flush())
            await asyncio.sleep(0)
            assert buffer.is_flushing
            assert len(buffer) == 0

            latest = await buffer.latest_known_value()
            assert latest.provenance is Provenance.FROM_BUFFER
            assert latest.precision == 10

            buffer.enqueue(pending(20))
            assert await buffer.flush() is False

            store.gate.set()
            assert await first is True
            assert await buffer.flush() is True

        asyncio.run(scenario())
        assert set(store.records) == {10, 20}

    def test_conflict_falls_back_to_single_writes(self):
        store = ConflictOnBatchStore()
        store.records[10] = PrecisionRecord(10, pi_like(10))
        buffer = WriteBuffer(store, ComputationConfig())

        async def scenario():
            buffer.enqueue(pending(10))
            buffer.enqueue(pending(20))
            return await buffer.flush()

        assert asyncio.run(scenario()) is True
        assert set(store.records) == {10, 20}
        # 1 lot rejeté + 2 écritures unitaires
        assert store.calls == 3
        assert buffer.cache.get().precision == 20
        assert buffer.stats["dead_lettered_batches"] == 0

    def test_transient_failure_requeues_batch_in_order(self):
        store = FlakyStore(failures=1)
        buffer = WriteBuffer(store, ComputationConfig())

        async def scenario():
            buffer.enqueue(pending(10))
            buffer.enqueue(pending(20))
            assert await buffer.flush() is False
            buffer.enqueue(pending(30))
            assert [item.precision for item in buffer.pending()] == [10, 20, 30]
            assert await buffer.flush() is True

        asyncio.run(scenario())
        assert set(store.records) == {10, 20, 30}
        assert buffer.stats["retried_batches"] == 1

    def test_terminal_failure_goes_to_dead_letter(self, tmp_path):
        dead_letter = FileDeadLetterLog(str(tmp_path / "dead_letter.jsonl"))
        buffer = WriteBuffer(BrokenStore(), ComputationConfig(), dead_letter=dead_letter)

        async def scenario():
            buffer.enqueue(pending(10))
            buffer.enqueue(pending(20))
            return await buffer.flush()

        assert asyncio.run(scenario()) is False
        assert len(buffer) == 0
        assert buffer.cache.get() is None
        entries = dead_letter.read_entries()
        assert len(entries) == 1
        assert entries[0]["precisions"] == [10, 20]
        assert entries[0]["error"] == "StorageError: disk full"
        assert buffer.stats["dead_lettered_batches"] == 1


class TestCleanup:
    """Nettoyage après flush"""

    def test_keeps_milestones_and_recent_values(self):
        store = MemoryPrecisionStore()
        for p in (0, 5, 10, 15, 100, 500, 995):
            store.records[p] = PrecisionRecord(p, pi_like(p))
        config = ComputationConfig(cleanup_enabled=True, cleanup_min_precision=1000)
        buffer = WriteBuffer(store, config)

        async def scenario():
            buffer.enqueue(pending(1005))
            await buffer.flush()

        asyncio.run(scenario())
        assert set(store.records) == {0, 10, 100, 1005}
        assert buffer.stats["cleaned_values"] == 4

    def test_without_milestones(self):
        store = MemoryPrecisionStore()
        for p in (0, 10, 100):
            store.records[p] = PrecisionRecord(p, pi_like(p))
        config = ComputationConfig(cleanup_enabled=True, cleanup_keep_milestones=False, cleanup_min_precision=1000)
        buffer = WriteBuffer(store, config)

        async def scenario():
            buffer.enqueue(pending(1010))
            await buffer.flush()

        asyncio.run(scenario())
        assert set(store.records) == {1010}

    def test_never_deletes_highest_durable_value(self):
        store = MemoryPrecisionStore()
        config = ComputationConfig(cleanup_enabled=True, cleanup_keep_milestones=False, cleanup_min_precision=5000)
        buffer = WriteBuffer(store, config)

        async def scenario():
            buffer.enqueue(pending(1500))
            buffer.enqueue(pending(2500))
            await buffer.flush()

        asyncio.run(scenario())
        assert set(store.records) == {2500}

    def test_disabled(self):
        buffer = WriteBuffer(MemoryPrecisionStore(), ComputationConfig())
        assert asyncio.run(buffer.run_cleanup()) == 0


class TestLatestKnownValue:
    """Ordre buffer, cache, base"""

    def test_provenance_sequence(self):
        store = MemoryPrecisionStore()
        buffer = WriteBuffer(store, ComputationConfig())

        async def scenario():
            assert await buffer.latest_known_value() is None

            buffer.enqueue(pending(10))
            assert (await buffer.latest_known_value()).provenance is Provenance.FROM_BUFFER

            await buffer.flush()
            latest = await buffer.latest_known_value()
            assert latest.provenance is Provenance.FROM_CACHE
            assert latest.cached_at is not None

            fresh = WriteBuffer(store, ComputationConfig())
            latest = await fresh.latest_known_value()
            assert latest.provenance is Provenance.FROM_DATABASE
            assert latest.precision == 10
            assert not latest.cached

        asyncio.run(scenario())

    def test_buffer_wins_over_cache(self):
        buffer = WriteBuffer(MemoryPrecisionStore(), ComputationConfig())
        buffer.cache.update(pi_like(50), 50)
        buffer.enqueue(pending(60))
        latest = asyncio.run(buffer.latest_known_value())
        assert latest.precision == 60
        assert latest.provenance is Provenance.FROM_BUFFER

    def test_storage_error_yields_none(self):
        buffer = WriteBuffer(BrokenStore(), ComputationConfig())
        assert asyncio.run(buffer.latest_known_value()) is None

    def test_precision_hint(self):
        buffer = WriteBuffer(MemoryPrecisionStore(), ComputationConfig())
        assert buffer.latest_buffered_precision_hint() == -1
        buffer.enqueue(pending(30))
        buffer.enqueue(pending(20))
        assert buffer.latest_buffered_precision_hint() == 30


class TestTimerAndClose:
    """Flush périodique et arrêt"""

    def test_periodic_flush(self):
        store = MemoryPrecisionStore()
        buffer = WriteBuffer(store, ComputationConfig(write_batch_interval_ms=10))

        async def scenario():
            buffer.start()
            buffer.enqueue(pending(10))
            for _ in range(100):
                if 10 in store.records:
                    break
                await asyncio.sleep(0.01)
            await buffer.close()

        asyncio.run(scenario())
        assert 10 in store.records

    def test_close_drains_buffer(self):
        store = MemoryPrecisionStore()
        buffer = WriteBuffer(store, ComputationConfig())

        async def scenario():
            buffer.start()
            buffer.enqueue(pending(10))
            buffer.enqueue(pending(20))
            await buffer.close()

        asyncio.run(scenario())
        assert set(store.records) == {10, 20}
        assert len(buffer) == 0

    def test_close_dead_letters_unwritable_values(self, tmp_path):
        dead_letter = FileDeadLetterLog(str(tmp_path / "dead_letter.jsonl"))
        buffer = WriteBuffer(FlakyStore(failures=100), ComputationConfig(), dead_letter=dead_letter)

        async def scenario():
            buffer.enqueue(pending(10))
            await buffer.close()

        asyncio.run(scenario())
        assert len(buffer) == 0
        entries = dead_letter.read_entries()
        assert entries[0]["precisions"] == [10]
        assert entries[0]["error"].startswith("TransientStorageError")


class TestWithSQLite:
    """Buffer devant un vrai stockage SQLite"""

    def test_same_precision_twice_leaves_one_record(self, tmp_path):
        store = SQLitePrecisionStore(str(tmp_path / "pi.db"))
        buffer = WriteBuffer(store, ComputationConfig())

        async def scenario():
            buffer.enqueue(pending(10))
            buffer.enqueue(pending(10))
            assert await buffer.flush() is True
            buffer.enqueue(pending(10))
            assert await buffer.flush() is True
            count = await store._run(
                lambda: store.conn.execute("SELECT COUNT(*) FROM pi_values").fetchone()[0]
            )
            await store.close()
            return count

        assert asyncio.run(scenario()) == 1
        assert buffer.cache.get().precision == 10


class UnavailableDeadLetter:
    async def record(self, batch, error):
        raise ConnectionError("redis down")


class TestCloseWithFailingDeadLetter:
    def test_close_completes(self):
        buffer = WriteBuffer(FlakyStore(failures=100), ComputationConfig(), dead_letter=UnavailableDeadLetter())

        async def scenario():
            buffer.enqueue(pending(10))
            await buffer.close()

        asyncio.run(scenario())
        assert len(buffer) == 0

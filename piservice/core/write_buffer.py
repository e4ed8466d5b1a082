"""Buffer d'écriture par lots et cache de la dernière valeur durable.

Le buffer accumule les valeurs calculées et les écrit en une transaction,
soit quand le lot atteint `write_batch_size`, soit à chaque tick du timer
(`write_batch_interval_ms`). Le cache garde la valeur de plus haute
précision déjà écrite, pour servir les lecteurs sans toucher la base.

Ordre de lecture de `latest_known_value()`:
1. buffer (valeur pas encore durable) -> fromBuffer
2. cache (durable, chemin rapide)     -> fromCache
3. lecture directe en base            -> fromDatabase
"""

import asyncio
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from piservice.config.computation_config import ComputationConfig
from piservice.config.logging_config import get_logger
from piservice.core.database import PrecisionStore
from piservice.core.dead_letter import DeadLetterLog, NullDeadLetterLog
from piservice.core.errors import TransientStorageError, UniqueConflictError
from piservice.core.fault_tolerance import ErrorClass, RetryPolicy
from piservice.core.models import CachedValue, LatestValue, PendingWrite, Provenance

logger = get_logger(__name__)

# Précisions jamais supprimées par le nettoyage (si cleanup_keep_milestones)
MILESTONE_PRECISIONS = frozenset({
    0, 10, 100, 1000, 5000, 10000, 20000, 50000, 100000, 200000, 500000, 1000000
})


class LatestValueCache:
    """Au plus une entrée: la plus haute précision connue comme durable."""

    def __init__(self) -> None:
        self._entry: Optional[CachedValue] = None

    def get(self) -> Optional[CachedValue]:
        return self._entry

    def update(self, value: str, precision: int) -> bool:
        """Remplace l'entrée si `precision` n'est pas plus basse que l'actuelle."""
        if self._entry is not None and precision < self._entry.precision:
            return False
        self._entry = CachedValue(value=value, precision=precision, cached_at=datetime.now(timezone.utc))
        return True

    def clear(self) -> None:
        self._entry = None


class WriteBuffer:
    """Buffer d'écriture single-flight devant le `PrecisionStore`."""

    def __init__(
        self,
        store: PrecisionStore,
        config: ComputationConfig,
        dead_letter: Optional[DeadLetterLog] = None,
        retry_policy: Optional[RetryPolicy] = None
    ):
        """
        Args:
            store: stockage durable
            config: taille de lot, intervalle, politique de nettoyage
            dead_letter: destination des lots abandonnés sur erreur terminale
            retry_policy: classement des erreurs de stockage
        """
        self.store = store
        self.config = config
        self.dead_letter = dead_letter or NullDeadLetterLog()
        self.retry_policy = retry_policy or RetryPolicy()
        self.cache = LatestValueCache()

        self._buffer: List[PendingWrite] = []
        # Lot en cours d'écriture, encore visible des lecteurs
        self._in_flight: List[PendingWrite] = []
        self._is_flushing = False
        self._flush_task: Optional[asyncio.Task] = None
        self._flush_timer: Optional[asyncio.Task] = None
        self._stopping: Optional[asyncio.Event] = None

        self.stats = {
            "flushes": 0,
            "flushed_values": 0,
            "retried_batches": 0,
            "dead_lettered_batches": 0,
            "cleaned_values": 0,
            "last_flush_at": None
        }

    def __len__(self) -> int:
        return len(self._buffer)

    @property
    def is_flushing(self) -> bool:
        return self._is_flushing

    def pending(self) -> List[PendingWrite]:
        """Copie des valeurs en attente (buffer puis lot en cours)."""
        return list(self._buffer) + list(self._in_flight)

    # ------------------------------------------------------------------
    # Écriture
    # ------------------------------------------------------------------

    def enqueue(self, record: PendingWrite) -> Optional[asyncio.Task]:
        """Ajoute une valeur; déclenche un flush si le lot est plein.

        Returns:
            La tâche de flush déclenchée, ou None
        """
        self._buffer.append(record)
        if len(self._buffer) >= self.config.write_batch_size:
            return self._schedule_flush()
        return None

    def _schedule_flush(self) -> asyncio.Task:
        if self._flush_task is not None and not self._flush_task.done():
            return self._flush_task
        self._flush_task = asyncio.get_running_loop().create_task(self._flush_logged())
        return self._flush_task

    async def _flush_logged(self) -> None:
        try:
            await self.flush()
        except Exception as e:
            logger.error(f"Erreur lors du flush du buffer: {e}", exc_info=True)

    async def flush(self) -> bool:
        """Écrit tout le buffer en une transaction.

        Sans effet si un flush est déjà en cours ou si le buffer est vide.

        Returns:
            True si le lot est durable
        """
        if self._is_flushing or not self._buffer:
            return False

        self._is_flushing = True
        batch = list(self._buffer)
        self._buffer.clear()
        self._in_flight = batch

        try:
            try:
                await self._upsert(batch)
            except asyncio.CancelledError:
                # Annulé en plein flush: le lot reste à écrire
                self._buffer[:0] = batch
                raise
            except Exception as e:
                await self._handle_failure(batch, e)
                return False

            self._mark_durable(batch)
            self._in_flight = []

            if self.config.cleanup_enabled:
                await self.run_cleanup()
        finally:
            self._in_flight = []
            self._is_flushing = False

        return True

    async def _upsert(self, batch: List[PendingWrite]) -> None:
        records = [item.to_record() for item in batch]
        try:
            await self.store.bulk_upsert(records)
        except UniqueConflictError:
            # Le lot a été annulé en bloc: on repasse valeur par valeur
            # pour que seules les valeurs réellement durables soient en cache
            logger.debug("Certaines valeurs existent déjà en base (attendu), écriture unitaire...")
            for record in records:
                try:
                    await self.store.bulk_upsert([record])
                except UniqueConflictError:
                    logger.debug(f"Précision {record.precision} déjà en base, ignorée")

    async def _handle_failure(self, batch: List[PendingWrite], error: Exception) -> None:
        precisions = [item.precision for item in batch]
        kind = self.retry_policy.classify(error)

        if kind is ErrorClass.RETRYABLE:
            # Remettre le lot en tête pour le prochain flush
            self._buffer[:0] = batch
            self.stats["retried_batches"] += 1
            logger.warning(
                f"Échec passager du flush ({error}), {len(batch)} valeurs remises en attente"
            )
            return

        self.stats["dead_lettered_batches"] += 1
        logger.error(
            f"Erreur terminale lors du flush (précisions: {precisions}): {error}",
            exc_info=error
        )
        try:
            await self.dead_letter.record(batch, error)
        except Exception as dl_error:
            logger.error(f"Impossible de consigner le lot abandonné {precisions}: {dl_error}")

    def _mark_durable(self, batch: List[PendingWrite]) -> None:
        latest = max(batch, key=lambda item: item.precision)
        self.cache.update(latest.value, latest.precision)

        self.stats["flushes"] += 1
        self.stats["flushed_values"] += len(batch)
        self.stats["last_flush_at"] = datetime.now(timezone.utc).isoformat()
        logger.debug(
            f"Flush de {len(batch)} valeurs (précisions: {', '.join(str(item.precision) for item in batch)})"
        )

    async def run_cleanup(self) -> int:
        """Supprime les précisions sous `cleanup_min_precision`.

        Les jalons (si activés) et la plus haute précision durable sont conservés.

        Returns:
            Nombre de valeurs supprimées
        """
        if not self.config.cleanup_enabled:
            return 0

        excluding = set(MILESTONE_PRECISIONS) if self.config.cleanup_keep_milestones else set()
        cached = self.cache.get()
        if cached is not None:
            excluding.add(cached.precision)

        try:
            deleted = await self.store.delete_where(self.config.cleanup_min_precision, frozenset(excluding))
        except Exception as e:
            logger.error(f"Erreur pendant le nettoyage: {e}", exc_info=True)
            return 0

        if deleted:
            self.stats["cleaned_values"] += deleted
            logger.debug(f"Nettoyage: {deleted} anciennes valeurs supprimées")
        return deleted

    # ------------------------------------------------------------------
    # Timer périodique et arrêt
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Démarre le flush périodique."""
        if self._flush_timer is not None and not self._flush_timer.done():
            return
        self._stopping = asyncio.Event()
        self._flush_timer = asyncio.get_running_loop().create_task(self._flush_periodically())

    async def _flush_periodically(self) -> None:
        interval = self.config.write_batch_interval_ms / 1000
        while True:
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=interval)
                return
            except asyncio.TimeoutError:
                pass
            await self._flush_logged()

    async def close(self) -> None:
        """Arrête le timer, attend le flush en cours puis vide le buffer."""
        if self._stopping is not None:
            self._stopping.set()
        if self._flush_timer is not None:
            await self._flush_timer
            self._flush_timer = None

        if self._flush_task is not None and not self._flush_task.done():
            await self._flush_task
        while self._is_flushing:
            await asyncio.sleep(0.01)

        await self.flush()

        if self._buffer:
            leftover = list(self._buffer)
            self._buffer.clear()
            logger.error(f"Arrêt avec {len(leftover)} valeurs non écrites")
            try:
                await self.dead_letter.record(
                    leftover, TransientStorageError("valeurs non écrites à l'arrêt")
                )
            except Exception as dl_error:
                logger.error(
                    f"Impossible de consigner les valeurs non écrites "
                    f"{[item.precision for item in leftover]}: {dl_error}"
                )

    # ------------------------------------------------------------------
    # Lecture
    # ------------------------------------------------------------------

    def latest_buffered(self) -> Optional[PendingWrite]:
        """Valeur de plus haute précision pas encore durable."""
        candidates = self.pending()
        if not candidates:
            return None
        return max(candidates, key=lambda item: item.precision)

    def latest_buffered_precision_hint(self) -> int:
        """Plus haute précision en attente, -1 si rien n'est en attente."""
        latest = self.latest_buffered()
        return latest.precision if latest is not None else -1

    async def latest_known_value(self) -> Optional[LatestValue]:
        """Meilleure valeur disponible (buffer, cache, puis base), None si rien."""
        buffered = self.latest_buffered()
        if buffered is not None:
            return LatestValue(buffered.value, buffered.precision, Provenance.FROM_BUFFER)

        cached = self.cache.get()
        if cached is not None:
            return LatestValue(cached.value, cached.precision, Provenance.FROM_CACHE, cached.cached_at)

        try:
            record = await self.store.find_highest_precision()
        except Exception as e:
            logger.warning(f"Lecture de secours en base impossible: {e}")
            return None

        if record is None:
            return None
        return LatestValue(record.value, record.precision, Provenance.FROM_DATABASE)

    def get_stats(self) -> Dict[str, Any]:
        cached = self.cache.get()
        return {
            **self.stats,
            "buffered": len(self._buffer),
            "in_flight": len(self._in_flight),
            "is_flushing": self._is_flushing,
            "cached_precision": cached.precision if cached else None
        }

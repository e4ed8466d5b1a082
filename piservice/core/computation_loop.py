"""Boucle de calcul continu de Pi.

Une seule instance de la boucle et une seule itération à la fois. Chaque
itération:
1. lit la plus haute précision connue (base + buffer), crée la valeur
   d'amorçage {0: "3"} si la base est vide
2. demande la précision suivante au planificateur, en sautant celles qui
   existent déjà (au plus 100 sondages)
3. calcule la valeur en mode coopératif
4. confie le résultat au buffer d'écriture
puis la boucle marque une courte pause avant l'itération suivante.

Le démarrage est paresseux (premier accès) et borné par un timeout sur le
stockage: en cas d'échec, le service reste en mode dégradé et continue de
servir les lectures.
"""

import asyncio
import time
from datetime import datetime
from typing import Any, Dict, Optional

from piservice.config.computation_config import ComputationConfig
from piservice.config.logging_config import get_logger
from piservice.core.calculator import SeriesCalculator
from piservice.core.database import PrecisionStore
from piservice.core.dead_letter import DeadLetterLog
from piservice.core.models import (
    IterationPhase,
    LatestValue,
    LoopState,
    PendingWrite,
    PrecisionRecord,
    utcnow,
)
from piservice.core.planner import PrecisionStepPlanner
from piservice.core.write_buffer import WriteBuffer

logger = get_logger(__name__)

BOOTSTRAP_RECORD_VALUE = "3"


class ComputationLoop:
    """Moteur de calcul: possède le calculateur, le planificateur et le buffer."""

    def __init__(
        self,
        store: PrecisionStore,
        config: ComputationConfig,
        calculator: Optional[SeriesCalculator] = None,
        write_buffer: Optional[WriteBuffer] = None,
        dead_letter: Optional[DeadLetterLog] = None,
        startup_timeout_s: float = 15.0,
        shutdown_grace_s: float = 10.0,
        iteration_pause_s: float = 0.1,
        error_cooldown_s: float = 1.0,
        exhaustion_backoff_s: float = 5.0,
        max_probe_iterations: int = 100
    ):
        """
        Args:
            store: stockage durable des valeurs
            config: configuration validée du calcul
            calculator: calculateur (SeriesCalculator par défaut)
            write_buffer: buffer d'écriture (créé sur `store` par défaut)
            dead_letter: journal des lots abandonnés, transmis au buffer créé
            startup_timeout_s: délai max de l'initialisation contre le stockage
            shutdown_grace_s: délai laissé à l'itération en cours à l'arrêt
            iteration_pause_s: pause entre deux itérations
            error_cooldown_s: pause après une itération en erreur
            exhaustion_backoff_s: pause quand aucune précision libre n'est trouvée
            max_probe_iterations: nombre max de sondages de précisions existantes
        """
        self.store = store
        self.config = config
        self.calculator = calculator or SeriesCalculator()
        self.planner = PrecisionStepPlanner(config)
        self.write_buffer = write_buffer or WriteBuffer(store, config, dead_letter=dead_letter)

        self.startup_timeout_s = startup_timeout_s
        self.shutdown_grace_s = shutdown_grace_s
        self.iteration_pause_s = iteration_pause_s
        self.error_cooldown_s = error_cooldown_s
        self.exhaustion_backoff_s = exhaustion_backoff_s
        self.max_probe_iterations = max_probe_iterations

        self.state = LoopState.IDLE
        self.phase = IterationPhase.IDLE
        self.is_computing = False
        self.running = False
        self.last_error: Optional[str] = None
        self.initial_computation_start: Optional[datetime] = None

        self._init_task: Optional[asyncio.Task] = None
        self._loop_task: Optional[asyncio.Task] = None
        self._loop_active = False

        self.stats = {
            "iterations": 0,
            "computed_values": 0,
            "failed_iterations": 0,
            "last_precision": None,
            "last_duration_s": None,
            "started_at": None
        }

    # ------------------------------------------------------------------
    # Cycle de vie
    # ------------------------------------------------------------------

    def ensure_started(self) -> Optional[asyncio.Task]:
        """Déclenche l'initialisation en arrière-plan si ce n'est pas déjà fait."""
        if self._init_task is not None:
            return self._init_task
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # Pas de boucle asyncio: le prochain accès réessaiera
            return None
        self._init_task = loop.create_task(self.start())
        return self._init_task

    async def start(self) -> bool:
        """Initialise le stockage et le cache puis lance la boucle.

        Un second appel est sans effet.

        Returns:
            True si la boucle tourne
        """
        if self.state is not LoopState.IDLE:
            return self.state is LoopState.RUNNING

        self.state = LoopState.INITIALIZING
        logger.info("Initialisation du service de calcul de Pi...")
        logger.info(f"Configuration: {self.config.summary()}")

        try:
            await asyncio.wait_for(self._initialize(), timeout=self.startup_timeout_s)
        except asyncio.TimeoutError:
            self.state = LoopState.DEGRADED
            self.last_error = f"Timeout d'initialisation après {self.startup_timeout_s}s"
            logger.error(f"Échec de l'initialisation du service de calcul: {self.last_error}")
            return False
        except Exception as e:
            self.state = LoopState.DEGRADED
            self.last_error = f"{type(e).__name__}: {e}"
            logger.error(f"Échec de l'initialisation du service de calcul: {e}", exc_info=True)
            return False

        self.write_buffer.start()
        # Levé avant la création de la tâche: un stop() immédiat reste visible
        self.is_computing = True
        self._loop_task = asyncio.get_running_loop().create_task(self.run_forever())
        self._loop_task.add_done_callback(self._on_loop_done)
        self.state = LoopState.RUNNING
        self.stats["started_at"] = utcnow().isoformat()
        logger.info("Service de calcul de Pi initialisé")
        return True

    async def stop(self) -> None:
        """Arrête la boucle puis vide le buffer une dernière fois.

        L'itération en cours a `shutdown_grace_s` pour se terminer; au-delà
        elle est annulée à son prochain point de suspension et son calcul
        est perdu.
        """
        logger.info("Arrêt du service de calcul...")
        self.is_computing = False

        if self._init_task is not None and not self._init_task.done():
            self._init_task.cancel()
            await asyncio.wait({self._init_task})

        if self._loop_task is not None and not self._loop_task.done():
            done, _ = await asyncio.wait({self._loop_task}, timeout=self.shutdown_grace_s)
            if not done:
                logger.warning(
                    f"Itération toujours en cours après {self.shutdown_grace_s}s, annulation"
                )
                self._loop_task.cancel()
                await asyncio.wait({self._loop_task})

        await self.write_buffer.close()
        self.state = LoopState.STOPPED
        logger.info("Calcul de Pi arrêté")

    def _on_loop_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        # Déjà journalisée dans run_forever
        error = task.exception()
        if error is not None:
            self.state = LoopState.DEGRADED

    # ------------------------------------------------------------------
    # Initialisation
    # ------------------------------------------------------------------

    async def _initialize(self) -> None:
        # Le cache est lu après l'amorçage pour contenir {0: "3"} sur une base vide
        await self._initialize_database()
        await asyncio.gather(
            self._cache_initial_computation_time(),
            self._initialize_cache()
        )

    async def _initialize_database(self) -> None:
        """Crée la valeur d'amorçage {0: "3"} si la base est vide."""
        existing = await self.store.find_highest_precision()
        if existing is not None:
            return

        record = PrecisionRecord(precision=0, value=BOOTSTRAP_RECORD_VALUE)
        await self.store.bulk_upsert([record])
        if self.initial_computation_start is None:
            self.initial_computation_start = record.computed_at
        logger.info(f"Base initialisée avec la valeur de Pi: {BOOTSTRAP_RECORD_VALUE}")

    async def _cache_initial_computation_time(self) -> None:
        """Mémorise la date du tout premier enregistrement."""
        initial = await self.store.find_lowest_precision()
        if initial is not None:
            self.initial_computation_start = initial.computed_at

    async def _initialize_cache(self) -> None:
        """Remplit le cache avec la dernière valeur en base."""
        try:
            latest = await self.store.find_highest_precision()
        except Exception as e:
            logger.warning(f"Échec de l'initialisation du cache: {e}. Nouvel essai au premier flush.")
            return

        if latest is not None:
            self.write_buffer.cache.update(latest.value, latest.precision)
            logger.debug(f"Cache initialisé à la précision {latest.precision}")

    # ------------------------------------------------------------------
    # Boucle
    # ------------------------------------------------------------------

    async def run_forever(self) -> None:
        """Enchaîne les itérations jusqu'à `stop()`.

        Les erreurs d'une itération sont absorbées par `run_iteration`; une
        erreur qui remonte jusqu'ici est fatale pour la boucle.
        """
        if self._loop_active:
            logger.warning("Calcul déjà démarré, demande ignorée")
            return

        self._loop_active = True
        logger.info("Démarrage du calcul continu de Pi...")

        try:
            while self.is_computing:
                await self.run_iteration()
                if self.is_computing:
                    await asyncio.sleep(self.iteration_pause_s)
        except Exception as e:
            self.is_computing = False
            self.last_error = f"{type(e).__name__}: {e}"
            logger.error(f"Erreur fatale dans la boucle de calcul: {e}", exc_info=True)
            raise
        finally:
            self._loop_active = False

    async def run_iteration(self) -> Optional[PendingWrite]:
        """Une itération complète.

        Returns:
            La valeur confiée au buffer, ou None si l'itération n'a rien produit
        """
        if self.running:
            logger.debug("Calcul déjà en cours, itération ignorée")
            return None

        self.running = True
        self.stats["iterations"] += 1
        started = time.monotonic()
        try:
            return await self._iterate(started)
        except Exception as e:
            self.stats["failed_iterations"] += 1
            self.last_error = f"{type(e).__name__}: {e}"
            logger.error(f"Erreur lors du calcul de Pi: {e}", exc_info=True)
            # Évite une boucle d'erreurs serrée
            await asyncio.sleep(self.error_cooldown_s)
            return None
        finally:
            self.phase = IterationPhase.IDLE
            self.running = False

    async def _iterate(self, started: float) -> Optional[PendingWrite]:
        self.phase = IterationPhase.PLANNING
        logger.debug("Lecture de la plus haute précision en base...")
        current = await self.store.find_highest_precision()

        if current is None:
            logger.info("Aucune valeur existante, initialisation de la base...")
            await self._initialize_database()
            return None

        # Le buffer peut être en avance sur la base
        current_precision = max(current.precision, self.write_buffer.latest_buffered_precision_hint())
        logger.debug(f"Plus haute précision connue: {current_precision}")

        target = await self._resolve_target(current_precision)
        if target is None:
            return None

        self.phase = IterationPhase.COMPUTING
        logger.info(f"Calcul de Pi à {target} décimales...")
        # Toujours en mode coopératif, même pour les petites précisions
        value = await self.calculator.compute_digits_async(target)

        self.phase = IterationPhase.BUFFERING
        record = PendingWrite(precision=target, value=value, computed_at=utcnow())
        self.write_buffer.enqueue(record)

        duration = time.monotonic() - started
        self.stats["computed_values"] += 1
        self.stats["last_precision"] = target
        self.stats["last_duration_s"] = round(duration, 3)
        logger.info(
            f"✓ Pi calculé à {target} décimales en {duration:.3f}s "
            f"(total: {self.total_elapsed_s():.3f}s, buffer: {len(self.write_buffer)})"
        )
        return record

    async def _precision_exists(self, precision: int) -> bool:
        if any(item.precision == precision for item in self.write_buffer.pending()):
            return True
        return await self.store.find_by_precision(precision) is not None

    async def _resolve_target(self, current: int) -> Optional[int]:
        """Précision cible libre (ni en base ni en attente), ou None pour abandonner l'itération."""
        target = self.planner.next_precision(current)
        logger.debug(f"Précision cible: {target}")

        exists = await self._precision_exists(target)
        probes = 0
        while exists and probes < self.max_probe_iterations:
            logger.debug(f"Précision {target} déjà présente, recherche de la suivante...")
            previous = target
            target = self.planner.next_precision(target)
            if target <= previous:
                logger.warning(
                    f"Le planificateur n'avance plus ({previous} -> {target}), itération abandonnée"
                )
                return None
            exists = await self._precision_exists(target)
            probes += 1

        if exists:
            logger.error(
                f"{self.max_probe_iterations} sondages sans trouver de précision libre, "
                f"pause de {self.exhaustion_backoff_s}s"
            )
            await asyncio.sleep(self.exhaustion_backoff_s)
            return None

        return target

    # ------------------------------------------------------------------
    # Lecture
    # ------------------------------------------------------------------

    async def latest_known_value(self) -> Optional[LatestValue]:
        """Meilleure valeur connue; déclenche le démarrage paresseux."""
        self.ensure_started()
        return await self.write_buffer.latest_known_value()

    def latest_buffered_precision_hint(self) -> int:
        """Plus haute précision en attente d'écriture, -1 si aucune."""
        self.ensure_started()
        return self.write_buffer.latest_buffered_precision_hint()

    def total_elapsed_s(self) -> float:
        if self.initial_computation_start is None:
            return 0.0
        return (utcnow() - self.initial_computation_start).total_seconds()

    def status(self) -> Dict[str, Any]:
        """État du moteur pour le diagnostic."""
        return {
            "state": self.state.value,
            "phase": self.phase.value,
            "is_computing": self.is_computing,
            "running": self.running,
            "last_error": self.last_error,
            "initial_computation_start": (
                self.initial_computation_start.isoformat() if self.initial_computation_start else None
            ),
            "total_elapsed_s": round(self.total_elapsed_s(), 3),
            "stats": dict(self.stats),
            "write_buffer": self.write_buffer.get_stats()
        }

"""Stockage des valeurs de Pi: SQLite (local/prod) et mémoire (dev/tests).

Le moteur ne dépend que de l'interface `PrecisionStore`; on bascule
d'implémentation sans toucher au code métier.
"""

import asyncio
import sqlite3
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import AbstractSet, Any, Callable, Dict, List, Optional, Sequence

from piservice.config.logging_config import get_logger
from piservice.core.errors import StorageError, TransientStorageError, UniqueConflictError
from piservice.core.models import PrecisionRecord

logger = get_logger(__name__)

# Messages SQLite qui signalent un problème passager
TRANSIENT_SQLITE_MESSAGES = ("locked", "busy", "unable to open", "disk i/o")


class PrecisionStore(ABC):
    """Interface abstraite du stockage des PrecisionRecord (clé: precision)."""

    @abstractmethod
    async def find_highest_precision(self) -> Optional[PrecisionRecord]:
        """Enregistrement de plus haute précision, ou None si la base est vide."""

    @abstractmethod
    async def find_lowest_precision(self) -> Optional[PrecisionRecord]:
        """Enregistrement de plus basse précision (date de démarrage du calcul)."""

    @abstractmethod
    async def find_by_precision(self, precision: int) -> Optional[PrecisionRecord]:
        """Enregistrement à une précision exacte."""

    @abstractmethod
    async def bulk_upsert(self, records: Sequence[PrecisionRecord]) -> None:
        """Écrit un lot en une seule transaction.

        Idempotent par précision: une précision déjà présente est ignorée,
        son contenu n'est jamais réécrit.
        """

    @abstractmethod
    async def delete_where(self, below: int, excluding: AbstractSet[int] = frozenset()) -> int:
        """Supprime les précisions < `below` sauf celles de `excluding`.

        Returns:
            Nombre d'enregistrements supprimés
        """

    @abstractmethod
    async def ping(self) -> None:
        """Vérifie que le stockage répond (lève une StorageError sinon)."""

    @abstractmethod
    async def close(self) -> None:
        """Ferme la connexion."""


def translate_sqlite_error(error: sqlite3.Error) -> StorageError:
    """Convertit une erreur sqlite3 en erreur de stockage classée."""
    message = str(error)
    if isinstance(error, sqlite3.IntegrityError) and "unique" in message.lower():
        return UniqueConflictError(message)
    if isinstance(error, sqlite3.OperationalError):
        if any(m in message.lower() for m in TRANSIENT_SQLITE_MESSAGES):
            return TransientStorageError(message)
    return StorageError(message)


class SQLitePrecisionStore(PrecisionStore):
    """Stockage SQLite.

    Les appels sqlite3 sont bloquants: ils tournent dans un thread
    (`asyncio.to_thread`) derrière un verrou, la connexion est partagée.
    """

    def __init__(self, db_path: str, timeout_s: float = 5.0):
        """Initialise l'adaptateur SQLite.

        Args:
            db_path: Chemin vers le fichier SQLite (ou ":memory:")
            timeout_s: Attente max sur un verrou SQLite
        """
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self.db_path = db_path
        self.conn: Optional[sqlite3.Connection] = sqlite3.connect(
            db_path, timeout=timeout_s, check_same_thread=False
        )
        self.conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._init_schema()

    def _init_schema(self) -> None:
        """Initialise le schéma de base de données."""
        cursor = self.conn.cursor()

        # Une ligne par précision, jamais modifiée une fois écrite
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS pi_values (
                precision INTEGER PRIMARY KEY CHECK (precision >= 0),
                value TEXT NOT NULL,
                computed_at TIMESTAMP NOT NULL,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)

        self.conn.commit()

    async def _run(self, func: Callable[..., Any], *args: Any) -> Any:
        """Exécute un appel sqlite3 dans un thread, erreurs converties."""
        def call():
            with self._lock:
                if self.conn is None:
                    raise TransientStorageError("Connexion SQLite fermée")
                try:
                    return func(*args)
                except sqlite3.Error as e:
                    raise translate_sqlite_error(e) from e

        return await asyncio.to_thread(call)

    @staticmethod
    def _row_to_record(row: Optional[sqlite3.Row]) -> Optional[PrecisionRecord]:
        if row is None:
            return None
        computed_at = datetime.fromisoformat(row["computed_at"])
        if computed_at.tzinfo is None:
            computed_at = computed_at.replace(tzinfo=timezone.utc)
        return PrecisionRecord(
            precision=row["precision"],
            value=row["value"],
            computed_at=computed_at
        )

    def _fetch_one(self, query: str, params: tuple = ()) -> Optional[PrecisionRecord]:
        cursor = self.conn.execute(query, params)
        return self._row_to_record(cursor.fetchone())

    def _insert_many(self, rows: List[tuple]) -> None:
        # `with conn` = une transaction, rollback si une ligne échoue
        with self.conn:
            self.conn.executemany(
                "INSERT INTO pi_values (precision, value, computed_at) VALUES (?, ?, ?) "
                "ON CONFLICT(precision) DO NOTHING",
                rows
            )

    def _delete(self, query: str, params: tuple) -> int:
        with self.conn:
            cursor = self.conn.execute(query, params)
        return cursor.rowcount

    async def find_highest_precision(self) -> Optional[PrecisionRecord]:
        return await self._run(
            self._fetch_one, "SELECT * FROM pi_values ORDER BY precision DESC LIMIT 1"
        )

    async def find_lowest_precision(self) -> Optional[PrecisionRecord]:
        return await self._run(
            self._fetch_one, "SELECT * FROM pi_values ORDER BY precision ASC LIMIT 1"
        )

    async def find_by_precision(self, precision: int) -> Optional[PrecisionRecord]:
        return await self._run(
            self._fetch_one, "SELECT * FROM pi_values WHERE precision = ?", (precision,)
        )

    async def bulk_upsert(self, records: Sequence[PrecisionRecord]) -> None:
        if not records:
            return
        rows = [(r.precision, r.value, r.computed_at.isoformat()) for r in records]
        await self._run(self._insert_many, rows)

    async def delete_where(self, below: int, excluding: AbstractSet[int] = frozenset()) -> int:
        query = "DELETE FROM pi_values WHERE precision < ?"
        params: tuple = (below,)
        if excluding:
            placeholders = ", ".join("?" for _ in excluding)
            query += f" AND precision NOT IN ({placeholders})"
            params += tuple(sorted(excluding))
        return await self._run(self._delete, query, params)

    async def ping(self) -> None:
        await self._run(lambda: self.conn.execute("SELECT 1").fetchone())

    async def close(self) -> None:
        """Ferme la connexion."""
        def close_conn():
            with self._lock:
                if self.conn is not None:
                    self.conn.close()
                    self.conn = None

        await asyncio.to_thread(close_conn)


class MemoryPrecisionStore(PrecisionStore):
    """Stockage en mémoire pour le développement local et les tests."""

    def __init__(self) -> None:
        self.records: Dict[int, PrecisionRecord] = {}

    async def find_highest_precision(self) -> Optional[PrecisionRecord]:
        if not self.records:
            return None
        return self.records[max(self.records)]

    async def find_lowest_precision(self) -> Optional[PrecisionRecord]:
        if not self.records:
            return None
        return self.records[min(self.records)]

    async def find_by_precision(self, precision: int) -> Optional[PrecisionRecord]:
        return self.records.get(precision)

    async def bulk_upsert(self, records: Sequence[PrecisionRecord]) -> None:
        for record in records:
            self.records.setdefault(record.precision, record)

    async def delete_where(self, below: int, excluding: AbstractSet[int] = frozenset()) -> int:
        doomed = [p for p in self.records if p < below and p not in excluding]
        for precision in doomed:
            del self.records[precision]
        return len(doomed)

    async def ping(self) -> None:
        return None

    async def close(self) -> None:
        return None


def create_store(db_type: str = "sqlite", **kwargs) -> PrecisionStore:
    """Instancie le stockage demandé.

    Args:
        db_type: Type de stockage ('sqlite' ou 'memory')
        **kwargs: Pour SQLite: db_path, timeout_s
    """
    if db_type == "sqlite":
        db_path = kwargs.get("db_path", "data/pi.db")
        logger.info(f"Stockage SQLite: {db_path}")
        return SQLitePrecisionStore(db_path, timeout_s=kwargs.get("timeout_s", 5.0))
    if db_type == "memory":
        logger.warning("Stockage en mémoire: les valeurs seront perdues à l'arrêt")
        return MemoryPrecisionStore()
    raise ValueError(f"Type de base de données non supporté: {db_type}")

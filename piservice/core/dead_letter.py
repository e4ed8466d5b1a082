"""Journal des lots abandonnés après une erreur de stockage terminale.

Un lot qui ne peut pas être écrit n'est jamais jeté en silence: il est
consigné ici pour pouvoir être rejoué à la main.
"""

import asyncio
import json
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import redis

from piservice.config.logging_config import get_logger
from piservice.config.settings import REDIS_CONFIG
from piservice.core.models import PendingWrite

logger = get_logger(__name__)


def build_entry(batch: Sequence[PendingWrite], error: BaseException) -> Dict[str, Any]:
    """Entrée de journal: horodatage, erreur et contenu du lot."""
    return {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "error": f"{type(error).__name__}: {error}",
        "precisions": [item.precision for item in batch],
        "items": [item.to_dict() for item in batch]
    }


class DeadLetterLog(ABC):
    """Destination des lots abandonnés."""

    @abstractmethod
    async def record(self, batch: Sequence[PendingWrite], error: BaseException) -> None:
        """Consigne un lot abandonné."""


class NullDeadLetterLog(DeadLetterLog):
    """Aucune persistance: le lot n'apparaît que dans les logs."""

    async def record(self, batch: Sequence[PendingWrite], error: BaseException) -> None:
        logger.error(
            f"Lot abandonné sans dead letter (précisions: {[item.precision for item in batch]}): {error}"
        )


class FileDeadLetterLog(DeadLetterLog):
    """Fichier JSON lines, une ligne par lot."""

    def __init__(self, path: str):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def _append(self, line: str) -> None:
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(line + "\n")

    async def record(self, batch: Sequence[PendingWrite], error: BaseException) -> None:
        entry = build_entry(batch, error)
        await asyncio.to_thread(self._append, json.dumps(entry))
        logger.warning(f"Lot de {len(batch)} valeurs consigné dans {self.path}")

    def read_entries(self) -> List[Dict[str, Any]]:
        """Relit toutes les entrées du journal."""
        if not self.path.exists():
            return []
        with open(self.path, "r", encoding="utf-8") as f:
            return [json.loads(line) for line in f if line.strip()]


class RedisDeadLetterLog(DeadLetterLog):
    """Liste Redis bornée, plus récent en tête."""

    def __init__(self, redis_client: Optional[redis.Redis] = None, key: str = "pi:dead_letter",
                 max_entries: int = 1000, ttl_s: int = 30 * 24 * 60 * 60):
        self.redis_client = redis_client or redis.Redis(**REDIS_CONFIG)
        self.key = key
        self.max_entries = max_entries
        # TTL: 30 jours
        self.ttl_s = ttl_s

    def _push(self, payload: str) -> None:
        # Ajouter à la liste (push à gauche)
        self.redis_client.lpush(self.key, payload)

        # Limiter la taille de la liste
        self.redis_client.ltrim(self.key, 0, self.max_entries - 1)

        # Définir le TTL
        self.redis_client.expire(self.key, self.ttl_s)

    async def record(self, batch: Sequence[PendingWrite], error: BaseException) -> None:
        entry = build_entry(batch, error)
        await asyncio.to_thread(self._push, json.dumps(entry))
        logger.warning(f"Lot de {len(batch)} valeurs consigné dans Redis ({self.key})")

    def read_entries(self) -> List[Dict[str, Any]]:
        """Relit les entrées, plus récente en premier."""
        entries = []
        for raw in self.redis_client.lrange(self.key, 0, -1):
            # Gérer les cas où raw est bytes ou string
            if isinstance(raw, bytes):
                raw = raw.decode()
            entries.append(json.loads(raw))
        return entries


def create_dead_letter_log(backend: str, **kwargs) -> DeadLetterLog:
    """Instancie le journal demandé ('file', 'redis' ou 'none')."""
    if backend == "file":
        return FileDeadLetterLog(kwargs.get("path", "data/dead_letter.jsonl"))
    if backend == "redis":
        return RedisDeadLetterLog(kwargs.get("redis_client"), key=kwargs.get("key", "pi:dead_letter"))
    if backend == "none":
        return NullDeadLetterLog()
    raise ValueError(f"Backend de dead letter non supporté: {backend}")

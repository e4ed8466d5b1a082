"""Modèles de données du moteur de calcul."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def check_value_format(precision: int, value: str) -> None:
    """Vérifie qu'une valeur a la forme "3" (précision 0) ou "3." + `precision` chiffres."""
    if precision < 0:
        raise ValueError(f"Précision négative: {precision}")
    if precision == 0:
        if value != "3":
            raise ValueError(f"Valeur invalide pour la précision 0: {value[:20]!r}")
        return
    if not value.startswith("3.") or len(value) != precision + 2 or not value[2:].isdigit():
        raise ValueError(f"Valeur invalide pour la précision {precision}: {value[:20]!r}...")


class Provenance(str, Enum):
    """Origine d'une valeur servie aux lecteurs."""
    FROM_BUFFER = "fromBuffer"
    FROM_CACHE = "fromCache"
    FROM_DATABASE = "fromDatabase"


class LoopState(Enum):
    IDLE = "idle"
    INITIALIZING = "initializing"
    RUNNING = "running"
    STOPPED = "stopped"
    DEGRADED = "degraded"


class IterationPhase(Enum):
    IDLE = "idle"
    PLANNING = "planning"
    COMPUTING = "computing"
    BUFFERING = "buffering"


@dataclass(frozen=True)
class PrecisionRecord:
    """Valeur durable de Pi à une précision donnée. Jamais modifiée une fois écrite."""

    precision: int
    value: str
    computed_at: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        check_value_format(self.precision, self.value)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "precision": self.precision,
            "value": self.value,
            "computed_at": self.computed_at.isoformat()
        }


@dataclass(frozen=True)
class PendingWrite:
    """Résultat calculé en attente d'écriture dans le buffer."""

    precision: int
    value: str
    computed_at: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        check_value_format(self.precision, self.value)

    def to_record(self) -> PrecisionRecord:
        return PrecisionRecord(self.precision, self.value, self.computed_at)

    def to_dict(self) -> Dict[str, Any]:
        return self.to_record().to_dict()


@dataclass(frozen=True)
class LatestValue:
    """Meilleure valeur connue et son origine."""

    value: str
    precision: int
    provenance: Provenance
    cached_at: Optional[datetime] = None

    @property
    def cached(self) -> bool:
        """Vrai si la valeur ne vient pas d'une lecture directe en base."""
        return self.provenance is not Provenance.FROM_DATABASE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "value": self.value,
            "precision": self.precision,
            "provenance": self.provenance.value,
            "cached_at": self.cached_at.isoformat() if self.cached_at else None
        }


@dataclass
class CachedValue:
    value: str
    precision: int
    cached_at: Optional[datetime] = None

"""Configuration du moteur de calcul de Pi.

Les valeurs viennent, par priorité croissante, des défauts du modèle, d'un
fichier YAML optionnel (``PI_CONFIG_FILE``, clé ``computation``) puis des
variables d'environnement ``PI_*``. Toute valeur invalide fait échouer le
démarrage.
"""

import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field

from piservice.config.logging_config import get_logger

logger = get_logger(__name__)


class ComputationConfig(BaseModel):
    """Paramètres du planificateur, du buffer d'écriture et du nettoyage."""

    model_config = ConfigDict(frozen=True)

    # Stratégie d'incrément
    increment_low: int = Field(10, ge=1)  # précision < 1000
    increment_medium: int = Field(1000, ge=1)  # précision 1000-100k
    increment_high_percent: int = Field(5, ge=1, le=100)  # précision >= 100k

    # Regroupement des écritures
    write_batch_size: int = Field(10, ge=1)
    write_batch_interval_ms: int = Field(5000, ge=1)

    # Nettoyage de la base
    cleanup_enabled: bool = False
    cleanup_keep_milestones: bool = True
    cleanup_min_precision: int = Field(1000, ge=0)

    def summary(self) -> str:
        """Résumé d'une ligne pour les logs de démarrage."""
        return (
            f"increments ({self.increment_low}/{self.increment_medium}/{self.increment_high_percent}%), "
            f"batch size: {self.write_batch_size}, interval: {self.write_batch_interval_ms}ms, "
            f"cleanup: {self.cleanup_enabled}"
        )


# Variable d'environnement -> (champ, type)
ENV_FIELDS = {
    "PI_INCREMENT_LOW": ("increment_low", int),
    "PI_INCREMENT_MEDIUM": ("increment_medium", int),
    "PI_INCREMENT_HIGH_PERCENT": ("increment_high_percent", int),
    "PI_WRITE_BATCH_SIZE": ("write_batch_size", int),
    "PI_WRITE_BATCH_INTERVAL_MS": ("write_batch_interval_ms", int),
    "PI_DB_CLEANUP_ENABLED": ("cleanup_enabled", bool),
    "PI_DB_CLEANUP_KEEP_MILESTONES": ("cleanup_keep_milestones", bool),
    "PI_DB_CLEANUP_MIN_PRECISION": ("cleanup_min_precision", int),
}


def parse_env_number(key: str, value: str) -> int:
    """Convertit une variable d'environnement en entier."""
    try:
        return int(value.strip(), 10)
    except ValueError:
        raise ValueError(f"Invalid number for {key}: {value}") from None


def parse_env_boolean(value: str) -> bool:
    """`true` ou `1` (insensible à la casse) valent True, le reste False."""
    return value.strip().lower() in ("true", "1")


def load_yaml_overrides(path: Path) -> Dict[str, Any]:
    """Charge la section ``computation`` d'un fichier YAML."""
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}

    section = data.get("computation", {})
    if not isinstance(section, dict):
        raise ValueError(f"Section 'computation' invalide dans {path}")
    return section


def load_computation_config(environ: Optional[Mapping[str, str]] = None) -> ComputationConfig:
    """Construit et valide la configuration de calcul.

    Args:
        environ: environnement à lire (``os.environ`` par défaut)

    Returns:
        Configuration validée

    Raises:
        ValueError: nombre illisible, ou contrainte violée (ValidationError)
    """
    env = os.environ if environ is None else environ
    values: Dict[str, Any] = {}

    config_file = env.get("PI_CONFIG_FILE")
    if config_file:
        values.update(load_yaml_overrides(Path(config_file)))
        logger.debug(f"Configuration chargée depuis {config_file}")

    for key, (field_name, kind) in ENV_FIELDS.items():
        raw = env.get(key)
        if raw is None:
            continue
        if kind is bool:
            values[field_name] = parse_env_boolean(raw)
        else:
            values[field_name] = parse_env_number(key, raw)

    return ComputationConfig(**values)

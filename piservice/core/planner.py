"""Choix de la prochaine précision à calculer.

- précision < 1000: petits incréments fixes (mises à jour fréquentes)
- 1000 <= précision < 100k: incréments fixes moyens
- précision >= 100k: incrément en pourcentage, pour que le coût relatif
  d'une étape reste à peu près constant et limiter le travail perdu si le
  process redémarre au milieu d'une étape
"""

from piservice.config.computation_config import ComputationConfig

LOW_PRECISION_LIMIT = 1000
MEDIUM_PRECISION_LIMIT = 100000
MIN_HIGH_INCREMENT = 10000
MIN_HIGH_INCREMENT_DIVISOR = 100  # 1%


def next_precision(current: int, config: ComputationConfig) -> int:
    """Retourne la précision cible suivante, strictement supérieure à `current`."""
    if current < LOW_PRECISION_LIMIT:
        return current + config.increment_low

    if current < MEDIUM_PRECISION_LIMIT:
        return current + config.increment_medium

    percent_increment = current * config.increment_high_percent // 100
    min_increment = max(MIN_HIGH_INCREMENT, current // MIN_HIGH_INCREMENT_DIVISOR)
    return current + max(min_increment, percent_increment)


class PrecisionStepPlanner:
    """Planificateur lié à une configuration."""

    def __init__(self, config: ComputationConfig) -> None:
        self.config = config

    def next_precision(self, current: int) -> int:
        return next_precision(current, self.config)

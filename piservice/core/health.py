"""Santé du service: base de données et moteur de calcul."""

import asyncio
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from piservice.config.logging_config import get_logger
from piservice.core.database import PrecisionStore

logger = get_logger(__name__)

HEALTHY = "healthy"
UNHEALTHY = "unhealthy"


class HealthService:
    """Vérifie le stockage et interroge le moteur via une capacité en lecture seule.

    Le moteur n'est connu qu'à travers `computation_hint` (plus haute
    précision en attente, -1 si aucune): aucune dépendance vers la boucle.
    """

    def __init__(self, store: PrecisionStore, computation_hint: Optional[Callable[[], int]] = None,
                 timeout_s: float = 5.0):
        self.store = store
        self.computation_hint = computation_hint
        self.timeout_s = timeout_s

    async def check_database(self) -> Dict[str, Any]:
        try:
            await asyncio.wait_for(self.store.ping(), timeout=self.timeout_s)
            return {"status": HEALTHY}
        except Exception as e:
            message = str(e) or type(e).__name__
            logger.error(f"Échec du contrôle de santé de la base: {message}")
            return {"status": UNHEALTHY, "message": message}

    async def check_computation(self) -> Dict[str, Any]:
        if self.computation_hint is None:
            return {"status": UNHEALTHY, "message": "Service de calcul indisponible"}

        try:
            latest = self.computation_hint()
        except Exception as e:
            return {"status": UNHEALTHY, "message": str(e)}

        label = latest if latest >= 0 else "rien en attente"
        return {"status": HEALTHY, "message": f"Dernière précision en attente: {label}"}

    async def get_health(self) -> Dict[str, Any]:
        database, computation = await asyncio.gather(
            self.check_database(),
            self.check_computation()
        )
        all_healthy = database["status"] == HEALTHY and computation["status"] == HEALTHY

        return {
            "status": "ok" if all_healthy else "error",
            "message": "Tous les services sont opérationnels" if all_healthy
            else "Au moins un service est en échec",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "services": {
                "database": database,
                "computation": computation
            }
        }

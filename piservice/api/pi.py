"""API endpoints pour la lecture de Pi."""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel

from piservice.config.logging_config import get_logger
from piservice.core.models import Provenance

# Configuration du logger
logger = get_logger(__name__)

router = APIRouter(prefix="/api/pi", tags=["pi"])


class PiResponse(BaseModel):
    value: str
    decimalPlaces: int
    cached: bool
    cachedAt: Optional[datetime] = None
    provenance: Optional[str] = None
    message: Optional[str] = None


@router.get("", response_model=PiResponse, response_model_exclude_none=True)
async def get_pi_value(request: Request):
    """Meilleure valeur de Pi connue (buffer, cache ou base)."""
    engine = request.app.state.engine
    latest = await engine.latest_known_value()

    if latest is None:
        return PiResponse(
            value="3",
            decimalPlaces=0,
            cached=False,
            message="Aucune valeur de Pi en base"
        )

    cached_at = None
    if latest.cached:
        # Une valeur du buffer n'a pas encore de date de cache
        if latest.provenance is Provenance.FROM_CACHE and latest.cached_at is not None:
            cached_at = latest.cached_at
        else:
            cached_at = datetime.now(timezone.utc)

    return PiResponse(
        value=latest.value,
        decimalPlaces=latest.precision,
        cached=latest.cached,
        cachedAt=cached_at,
        provenance=latest.provenance.value
    )


@router.get("/status")
async def get_computation_status(request: Request) -> Dict[str, Any]:
    """État du moteur de calcul et du buffer d'écriture."""
    try:
        engine = request.app.state.engine
        engine.ensure_started()
        return engine.status()
    except Exception as e:
        logger.error(f"Erreur lors de la lecture du statut: {e}")
        raise HTTPException(status_code=500, detail=f"Erreur lors de la récupération du statut: {str(e)}")

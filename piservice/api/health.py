"""API endpoint de santé."""

from fastapi import APIRouter, Request

router = APIRouter(tags=["health"])


@router.get("/health")
async def get_health(request: Request):
    """Santé de la base et du moteur de calcul."""
    return await request.app.state.health_service.get_health()

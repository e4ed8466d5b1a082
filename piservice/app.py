"""Application web du service Pi.

Expose la meilleure valeur de Pi connue pendant que le moteur de calcul
tourne en tâche de fond dans la même boucle asyncio.
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from piservice.api.health import router as health_router
from piservice.api.pi import router as pi_router
from piservice.config import settings
from piservice.config.computation_config import ComputationConfig, load_computation_config
from piservice.config.logging_config import get_logger, setup_logging
from piservice.core.computation_loop import ComputationLoop
from piservice.core.database import PrecisionStore, create_store
from piservice.core.dead_letter import DeadLetterLog, create_dead_letter_log
from piservice.core.health import HealthService

logger = get_logger(__name__)


def create_app(
    config: Optional[ComputationConfig] = None,
    store: Optional[PrecisionStore] = None,
    dead_letter: Optional[DeadLetterLog] = None,
    start_engine: bool = True
) -> FastAPI:
    """Construit l'application.

    Args:
        config: configuration du calcul (lue dans l'environnement par défaut)
        store: stockage (créé depuis `settings` par défaut)
        dead_letter: journal des lots abandonnés (créé depuis `settings` par défaut)
        start_engine: démarre le moteur dès le lifespan; sinon au premier accès
    """
    setup_logging()

    # Une configuration invalide doit empêcher le démarrage
    config = config or load_computation_config()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Initialise le moteur au démarrage et gère le teardown proprement."""
        app_store = store or create_store(settings.DATABASE_TYPE, db_path=settings.DATABASE_PATH)
        app_dead_letter = dead_letter or create_dead_letter_log(
            settings.DEAD_LETTER_BACKEND,
            path=settings.DEAD_LETTER_FILE,
            key=settings.DEAD_LETTER_KEY
        )

        engine = ComputationLoop(
            app_store,
            config,
            dead_letter=app_dead_letter,
            startup_timeout_s=settings.STARTUP_TIMEOUT_S,
            shutdown_grace_s=settings.SHUTDOWN_GRACE_S
        )
        app.state.engine = engine
        app.state.health_service = HealthService(
            app_store, computation_hint=engine.latest_buffered_precision_hint
        )

        if start_engine:
            engine.ensure_started()

        yield

        try:
            await engine.stop()
        finally:
            await app_store.close()
            logger.info("Stockage fermé")

    app = FastAPI(
        title="Pi Service",
        description="Calcul continu de Pi et lecture de la meilleure valeur connue",
        version="1.0.0",
        lifespan=lifespan
    )

    # Middleware CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET"],
        allow_headers=["*"],
    )

    app.include_router(pi_router)
    app.include_router(health_router)

    return app

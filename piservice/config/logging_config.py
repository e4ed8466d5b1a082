"""Configuration centralisée du logging pour le service Pi.

Variables lues: LOG_LEVEL, LOG_FORMAT et LOG_FILE (vide: console
uniquement). Le niveau s'applique aussi au logger `piservice`, pour rester
effectif quand un autre composant (uvicorn, pytest) a déjà configuré la
racine.
"""

import os
import logging
import logging.handlers
from pathlib import Path
from typing import List, Mapping, Optional

DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DEFAULT_LOG_FILE = "logs/piservice.log"
MAX_LOG_BYTES = 10 * 1024 * 1024  # 10MB
LOG_BACKUP_COUNT = 5

# Bibliothèques trop bavardes
NOISY_LOGGERS = {
    "uvicorn.access": logging.WARNING,  # une ligne par requête
    "redis": logging.WARNING,
}

_configured = False


def build_handlers(log_file: str, log_format: str = DEFAULT_FORMAT) -> List[logging.Handler]:
    """Console, plus un fichier tournant si `log_file` est renseigné."""
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.insert(0, logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=MAX_LOG_BYTES,
            backupCount=LOG_BACKUP_COUNT,
            encoding="utf-8"
        ))

    formatter = logging.Formatter(log_format)
    for handler in handlers:
        handler.setFormatter(formatter)
    return handlers


def setup_logging(environ: Optional[Mapping[str, str]] = None) -> None:
    """Configure le logging global; les appels suivants sont sans effet."""
    global _configured
    if _configured:
        return

    env = os.environ if environ is None else environ
    level = getattr(logging, env.get("LOG_LEVEL", "INFO").upper(), logging.INFO)
    root = logging.getLogger()
    # Racine déjà configurée ailleurs: ne pas doubler les sorties
    if not root.handlers:
        root.setLevel(level)
        for handler in build_handlers(env.get("LOG_FILE", DEFAULT_LOG_FILE),
                                      env.get("LOG_FORMAT", DEFAULT_FORMAT)):
            root.addHandler(handler)

    logging.getLogger("piservice").setLevel(level)
    for logger_name, noisy_level in NOISY_LOGGERS.items():
        logging.getLogger(logger_name).setLevel(noisy_level)

    _configured = True


def get_logger(name: str) -> logging.Logger:
    """Retourne un logger configuré pour le module donné."""
    return logging.getLogger(name)

"""Configuration du processus: base de données, Redis, dead letter, serveur."""

import os

# Base de données
DATABASE_TYPE = os.getenv("PI_DATABASE_TYPE", "sqlite")
DATABASE_PATH = os.getenv("PI_DATABASE_PATH", "data/pi.db")

# Démarrage / arrêt du moteur de calcul
STARTUP_TIMEOUT_S = float(os.getenv("PI_STARTUP_TIMEOUT_S", "15"))
SHUTDOWN_GRACE_S = float(os.getenv("PI_SHUTDOWN_GRACE_S", "10"))

# Dead letter des lots abandonnés ("file", "redis" ou "none")
DEAD_LETTER_BACKEND = os.getenv("PI_DEAD_LETTER_BACKEND", "file")
DEAD_LETTER_FILE = os.getenv("PI_DEAD_LETTER_FILE", "data/dead_letter.jsonl")
DEAD_LETTER_KEY = os.getenv("PI_DEAD_LETTER_KEY", "pi:dead_letter")

# Configuration Redis
REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
REDIS_PORT = int(os.getenv("REDIS_PORT", "6379"))
REDIS_DB = int(os.getenv("REDIS_DB", "0"))

REDIS_CONFIG = {
    "host": REDIS_HOST,
    "port": REDIS_PORT,
    "db": REDIS_DB,
    "decode_responses": True
}

# Serveur HTTP
HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "3001"))
DEBUG = os.getenv("DEBUG", "false").lower() == "true"
ALLOWED_ORIGINS = [
    origin.strip()
    for origin in os.getenv("ALLOWED_ORIGINS", "http://localhost:3000,http://localhost:3002").split(",")
    if origin.strip()
]

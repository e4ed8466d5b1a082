"""Exceptions du service Pi."""


class PiServiceError(Exception):
    """Erreur de base du service."""


class InvalidPrecision(PiServiceError, ValueError):
    """Précision demandée au-delà des limites numériques sûres."""

    def __init__(self, precision: int, limit: int) -> None:
        super().__init__(f"Précision {precision} hors limite (max {limit})")
        self.precision = precision
        self.limit = limit


class StorageError(PiServiceError):
    """Erreur de stockage non récupérable (le lot sera abandonné)."""


class TransientStorageError(StorageError):
    """Erreur de connexion, de timeout ou de verrou: on peut réessayer."""


class UniqueConflictError(StorageError):
    """La précision existe déjà en base (écriture concurrente ou redémarrage)."""

    def __init__(self, message: str, precision=None) -> None:
        super().__init__(message)
        self.precision = precision

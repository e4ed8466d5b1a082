"""Classement des erreurs de stockage pour le buffer d'écriture.

- conflit d'unicité: bénin, la précision est déjà durable
- erreur passagère (connexion, timeout, verrou): le lot sera réessayé
- le reste est terminal: le lot part en dead letter
"""

from enum import Enum

from piservice.core.errors import TransientStorageError, UniqueConflictError


class ErrorClass(Enum):
    CONFLICT = "conflict"
    RETRYABLE = "retryable"
    TERMINAL = "terminal"


class RetryPolicy:
    # Types d'erreurs qui justifient un retry
    retryable_errors = (
        TransientStorageError,
        ConnectionError,
        TimeoutError,
    )

    def classify(self, error: BaseException) -> ErrorClass:
        """Range une erreur de flush dans une des trois catégories."""
        if isinstance(error, UniqueConflictError):
            return ErrorClass.CONFLICT
        if isinstance(error, self.retryable_errors):
            return ErrorClass.RETRYABLE
        return ErrorClass.TERMINAL

    def should_retry(self, error: BaseException) -> bool:
        return self.classify(error) is ErrorClass.RETRYABLE


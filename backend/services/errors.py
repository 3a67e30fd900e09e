"""
Erreurs métier du moteur demande → stock → expédition.

Chaque erreur porte un code stable, un statut HTTP et un dict `details`
sérialisable ; la couche API les traduit telles quelles.
"""

from __future__ import annotations

from typing import Any


class EngineError(Exception):
    code = "ENGINE_ERROR"
    http_status = 400
    retryable = False

    def __init__(self, message: str, *, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
            "details": self.details,
        }


class ValidationError(EngineError):
    code = "VALIDATION_ERROR"


class InvalidQuantity(EngineError):
    code = "INVALID_QUANTITY"


class NotFound(EngineError):
    code = "NOT_FOUND"
    http_status = 404


class ConflictUnresolved(EngineError):
    code = "CONFLICT_UNRESOLVED"
    http_status = 409

    def __init__(self, message: str, *, conflicts: list[dict[str, Any]], session_token: str | None = None):
        super().__init__(message, details={"conflicts": conflicts, "session_token": session_token})
        self.conflicts = conflicts
        self.session_token = session_token


class HasShipments(EngineError):
    code = "HAS_SHIPMENTS"
    http_status = 409


class InsufficientStock(EngineError):
    code = "INSUFFICIENT_STOCK"
    http_status = 409


class InsufficientAtomicity(EngineError):
    """Échec transactionnel : tout a été annulé, l'appel peut être rejoué."""

    code = "TRANSACTION_FAILED"
    http_status = 503
    retryable = True

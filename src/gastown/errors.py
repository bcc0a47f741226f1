"""Exception hierarchy for the town orchestrator.

The routing layer maps these to structured responses via ``status_code`` and
``to_dict()``; it never has to inspect message text.
"""


class GastownError(Exception):
    """Base exception for all orchestrator errors."""

    status_code = 500
    code = "internal_error"

    def __init__(self, message: str, *, details: dict[str, object] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, object]:
        return {"error": self.code, "message": self.message, "details": self.details}


class NotFoundError(GastownError):
    """Raised when a mutation targets an entity that does not exist."""

    status_code = 404
    code = "not_found"

    def __init__(self, entity_type: str, identifier: str) -> None:
        super().__init__(
            f"{entity_type} not found: {identifier}",
            details={"entity_type": entity_type, "identifier": identifier},
        )


class ConflictError(GastownError):
    """Raised when an operation conflicts with current state (double hook, duplicates)."""

    status_code = 409
    code = "conflict"


class ValidationError(GastownError):
    """Raised when input validation fails. No state is changed."""

    status_code = 400
    code = "invalid_input"

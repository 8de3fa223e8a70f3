"""Error types raised by the storefront services.

Each error carries the HTTP status it is answered with; main.py turns them
into ``{"error": message}`` responses.
"""

from pydantic import ValidationError as PydanticValidationError


class StoreError(Exception):
    """Base exception for all storefront errors."""

    status_code = 500

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ValidationError(StoreError):
    """Missing or malformed request fields."""

    status_code = 400


class NotFound(StoreError):
    """A referenced user, address, product, variant or record does not exist."""

    status_code = 404

    def __init__(self, kind: str, ident: str | None = None):
        self.kind = kind
        self.ident = ident
        msg = f"{kind} not found"
        if ident:
            msg = f"{kind} with ID {ident} not found"
        super().__init__(msg)


class InsufficientStock(StoreError):
    status_code = 400

    def __init__(self, name: str, requested: int, available: int | None = None):
        self.name = name
        self.requested = requested
        self.available = available
        super().__init__(f"Insufficient stock for product {name}")


class Conflict(StoreError):
    status_code = 409


class UpstreamFailure(StoreError):
    """The image host rejected an upload or could not be reached."""

    status_code = 500


class PersistenceError(StoreError):
    """A database write failed."""

    status_code = 500


def describe_errors(errors) -> str:
    """Flatten pydantic error dicts into one readable line."""
    parts = []
    for err in errors:
        loc = ".".join(str(p) for p in err.get("loc", ()) if p != "body") or "body"
        parts.append(f"{loc}: {err.get('msg')}")
    return "; ".join(parts)


def parse_model(model_cls, data, what: str = "request"):
    try:
        return model_cls.model_validate(data)
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid {what}: {describe_errors(e.errors())}") from e

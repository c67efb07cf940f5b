"""
Validation errors in the format the recipe UI consumes:

    {"errors": {"<field>": {"message": "..."}}}
"""
from typing import Dict, Optional

from pydantic import BaseModel


class FieldError(BaseModel):
    message: str


class ErrorResponse(BaseModel):
    errors: Dict[str, FieldError]


class ValidationErrors:
    """Collects field errors before they are returned to a client."""

    def __init__(self):
        self.errors: Dict[str, FieldError] = {}

    def add(self, message: str, field: str):
        self.errors[field] = FieldError(message=message)

    def has_errors(self) -> bool:
        return bool(self.errors)

    def to_response(self) -> ErrorResponse:
        return ErrorResponse(errors=self.errors)

    def to_dict(self) -> Dict[str, Dict[str, Dict[str, str]]]:
        return self.to_response().model_dump()


def error_json(field: str, message: str, extra: Optional[ValidationErrors] = None):
    """Build the error body for a single field error."""
    errors = extra or ValidationErrors()
    errors.add(message, field)
    return errors.to_dict()

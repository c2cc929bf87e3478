"""Base schemas and common types for the support service API."""

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


# =============================================================================
# BASE SCHEMAS
# =============================================================================


class SupportBaseModel(BaseModel):
    """Base model with common configuration.

    Fields are snake_case in Python and camelCase on the wire; requests may
    use either.
    """

    model_config = ConfigDict(
        from_attributes=True,  # Enable ORM mode
        populate_by_name=True,
        alias_generator=to_camel,
    )


# =============================================================================
# ERROR RESPONSES
# =============================================================================


class ErrorDetail(SupportBaseModel):
    """Detailed error information."""

    field: str | None = None
    message: str
    code: str


class ErrorResponse(SupportBaseModel):
    """Standard error response format."""

    error: str
    message: str
    details: list[ErrorDetail] = []
    request_id: str | None = None

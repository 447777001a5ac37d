"""
Error envelope for the HTTP surface.

Pipeline failures never reach a caller as exceptions: they are written onto
the card (error_message / error_kind) and the card moves to a failure status.
Request failures (unknown card, illegal transition, store not configured) are
raised as KnownError subclasses and rendered as an ApiResponse by the
application's exception handlers.

Outcomes:
- success: the request did what it asked
- known_failure: the cause is known and explained to the user
- unknown_failure: anything else, reported with a fixed message

Every envelope leaving the app goes through `finalize_response()`.
"""

from enum import Enum
from typing import Any, Generic, TypeVar

from pydantic import BaseModel, Field


class FailureKind(str, Enum):
    """What went wrong, as recorded on cards and in error envelopes."""

    # Caller mistakes
    INVALID_INPUT = "invalid_input"
    NOT_FOUND = "not_found"
    INVALID_TRANSITION = "invalid_transition"

    # Analysis service
    SERVICE_UNAVAILABLE = "service_unavailable"
    CREDENTIAL_REQUIRED = "credential_required"
    INVALID_RESPONSE = "invalid_response"

    # Set by recovery on cards whose stage was cut short by a restart
    INTERRUPTED = "interrupted"

    # Remote store and spreadsheet
    EXTERNAL_API_ERROR = "external_api_error"
    NOT_CONFIGURED = "not_configured"

    UNKNOWN = "unknown"


class OutcomeType(str, Enum):
    SUCCESS = "success"
    KNOWN_FAILURE = "known_failure"
    UNKNOWN_FAILURE = "unknown_failure"


T = TypeVar("T")


class FailureDetail(BaseModel):
    """The explanation half of a failed envelope."""

    kind: FailureKind = Field(..., description="Failure classification")
    message: str = Field(..., description="What went wrong, in words the user can act on")
    detail: str | None = Field(default=None, description="Technical detail, if any")
    suggestion: str | None = Field(default=None, description="What to try next")


class ApiResponse(BaseModel, Generic[T]):
    """Envelope for every response body that reports an outcome."""

    outcome: OutcomeType = Field(..., description="How the request ended")
    data: T | None = Field(default=None, description="Payload, on success only")
    failure: FailureDetail | None = Field(
        default=None, description="Explanation, on failure only"
    )

    @classmethod
    def known_failure(
        cls,
        kind: FailureKind,
        message: str,
        detail: str | None = None,
        suggestion: str | None = None,
    ) -> "ApiResponse[Any]":
        return cls(
            outcome=OutcomeType.KNOWN_FAILURE,
            failure=FailureDetail(kind=kind, message=message, detail=detail, suggestion=suggestion),
        )


class KnownError(Exception):
    """
    A failure the system can explain.

    `status_code` is used when the error is rendered as an HTTP response.
    """

    def __init__(
        self,
        kind: FailureKind,
        message: str,
        detail: str | None = None,
        suggestion: str | None = None,
        status_code: int = 400,
    ):
        self.kind = kind
        self.message = message
        self.detail = detail
        self.suggestion = suggestion
        self.status_code = status_code
        super().__init__(message)

    def to_response(self) -> ApiResponse[Any]:
        return ApiResponse.known_failure(
            kind=self.kind,
            message=self.message,
            detail=self.detail,
            suggestion=self.suggestion,
        )


class CardNotFoundError(KnownError):
    """Raised when a card id is not present in the collection."""

    def __init__(self, card_id: str):
        self.card_id = card_id
        super().__init__(
            kind=FailureKind.NOT_FOUND,
            message=f"Card '{card_id}' was not found in the collection.",
            suggestion="Refresh the collection; the card may have been deleted.",
            status_code=404,
        )


class SourceNotConfiguredError(KnownError):
    """Raised when a sync operation needs a store that is not configured."""

    def __init__(self, source: str):
        self.source = source
        super().__init__(
            kind=FailureKind.NOT_CONFIGURED,
            message=f"The {source} is not configured.",
            suggestion="Provide the access token and location in settings.",
            status_code=503,
        )


# =============================================================================
# FINALIZATION
# =============================================================================

STANDARD_MESSAGES: dict[OutcomeType, str] = {
    OutcomeType.UNKNOWN_FAILURE: (
        "Something went wrong and the cause is unknown. Retry the request."
    ),
}

STANDARD_SUGGESTIONS: dict[OutcomeType, str] = {
    OutcomeType.UNKNOWN_FAILURE: "If it keeps happening, check the server log.",
}


def finalize_response(response: ApiResponse[Any]) -> ApiResponse[Any]:
    """
    Check an envelope's shape before it is sent.

    Raises:
        ValueError: If a success carries a failure, or a failure lacks one
    """
    if response.outcome == OutcomeType.SUCCESS:
        if response.failure is not None:
            raise ValueError("Success response must not have failure details")
    elif response.failure is None:
        raise ValueError(f"{response.outcome.value} response must have failure details")
    return response


def create_unknown_failure(exception: Exception, include_type: bool = True) -> ApiResponse[Any]:
    """
    Envelope for an unclassified exception.

    Only the exception type is reported; its message may hold secrets.
    """
    response: ApiResponse[Any] = ApiResponse(
        outcome=OutcomeType.UNKNOWN_FAILURE,
        failure=FailureDetail(
            kind=FailureKind.UNKNOWN,
            message=STANDARD_MESSAGES[OutcomeType.UNKNOWN_FAILURE],
            detail=type(exception).__name__ if include_type else None,
            suggestion=STANDARD_SUGGESTIONS[OutcomeType.UNKNOWN_FAILURE],
        ),
    )
    return finalize_response(response)


def create_known_failure(error: KnownError) -> ApiResponse[Any]:
    return finalize_response(error.to_response())

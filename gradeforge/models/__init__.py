from gradeforge.models.card import (
    AUTO_DISPATCH_STATES,
    FAILURE_STATES,
    REVIEWABLE_STATES,
    Card,
    CardStatus,
    ChallengeDirection,
    EvaluationDetails,
    MarketValue,
    SourceLink,
    SubGrade,
    new_card,
    normalize_card_record,
)
from gradeforge.models.collection import CardCollection, CollectionState
from gradeforge.models.failure import (
    STANDARD_MESSAGES,
    STANDARD_SUGGESTIONS,
    ApiResponse,
    CardNotFoundError,
    FailureDetail,
    FailureKind,
    KnownError,
    OutcomeType,
    SourceNotConfiguredError,
    create_known_failure,
    create_unknown_failure,
    finalize_response,
)

__all__ = [
    "AUTO_DISPATCH_STATES",
    "FAILURE_STATES",
    "REVIEWABLE_STATES",
    "STANDARD_MESSAGES",
    "STANDARD_SUGGESTIONS",
    "ApiResponse",
    "Card",
    "CardCollection",
    "CardNotFoundError",
    "CardStatus",
    "ChallengeDirection",
    "CollectionState",
    "EvaluationDetails",
    "FailureDetail",
    "FailureKind",
    "KnownError",
    "MarketValue",
    "OutcomeType",
    "SourceLink",
    "SourceNotConfiguredError",
    "SubGrade",
    "create_known_failure",
    "create_unknown_failure",
    "finalize_response",
    "new_card",
    "normalize_card_record",
]

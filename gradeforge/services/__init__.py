"""
GradeForge services.

Retry, debounce and merge primitives. The analysis client, persistence
gateway and orchestrator are imported from their own modules.
"""

from gradeforge.services.debounce import Debouncer
from gradeforge.services.merger import (
    IdentityKey,
    assign_synthetic_timestamps,
    catalog_identity_key,
    default_identity_key,
    image_identity_key,
    merge_collections,
)
from gradeforge.services.retry import (
    ErrorClass,
    RetryExecutor,
    RetryExhaustedError,
    RetryPolicy,
)

__all__ = [
    "Debouncer",
    "ErrorClass",
    "IdentityKey",
    "RetryExecutor",
    "RetryExhaustedError",
    "RetryPolicy",
    "assign_synthetic_timestamps",
    "catalog_identity_key",
    "default_identity_key",
    "image_identity_key",
    "merge_collections",
]

"""
GradeForge card pipeline.

Lifecycle rules, stage handlers, the bounded scheduler and crash recovery.
"""

from gradeforge.pipeline.recovery import RECOVERY_MESSAGE, RecoveryResult, recover_interrupted
from gradeforge.pipeline.scheduler import InFlightSet, RetryNotice, Scheduler
from gradeforge.pipeline.stages import STAGE_HANDLERS, StageHandler
from gradeforge.pipeline.state_machine import (
    Accept,
    CardEvent,
    Challenge,
    InvalidTransitionError,
    ManualOverride,
    RequestValuation,
    Retry,
    StageFailed,
    StageSucceeded,
    apply_event,
)

__all__ = [
    "RECOVERY_MESSAGE",
    "STAGE_HANDLERS",
    "Accept",
    "CardEvent",
    "Challenge",
    "InFlightSet",
    "InvalidTransitionError",
    "ManualOverride",
    "RecoveryResult",
    "RequestValuation",
    "Retry",
    "RetryNotice",
    "Scheduler",
    "StageFailed",
    "StageHandler",
    "StageSucceeded",
    "apply_event",
    "recover_interrupted",
]

"""Dead-letter store and compensating rollback."""

from .compensation import CompensationManager
from .models import (
    CompensationAction,
    CompensationReport,
    CompensationResult,
    CompensationStatus,
    DataMutationCompensation,
    DeadLetterAction,
    DeadLetterEntry,
    DeadLetterStatus,
    HttpCallCompensation,
    ManualInstructionCompensation,
    NotificationCompensation,
    ProcessResult,
    ResolutionType,
    compensation_from_dict,
    compensation_to_dict,
)
from .store import DeadLetterStore

__all__ = [
    "CompensationAction",
    "CompensationManager",
    "CompensationReport",
    "CompensationResult",
    "CompensationStatus",
    "DataMutationCompensation",
    "DeadLetterAction",
    "DeadLetterEntry",
    "DeadLetterStatus",
    "DeadLetterStore",
    "HttpCallCompensation",
    "ManualInstructionCompensation",
    "NotificationCompensation",
    "ProcessResult",
    "ResolutionType",
    "compensation_from_dict",
    "compensation_to_dict",
]

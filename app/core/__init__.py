from app.core.event_bus import (
    ApprovalRunCompleted,
    ApprovalRunStarted,
    ApprovalStepDecided,
    DomainEvent,
    EventBus,
    ModificationDecided,
    ModificationRequested,
    RfqPaused,
    RfqPublished,
    RfqResumed,
    get_event_bus,
    reset_event_bus_for_tests,
)

__all__ = [
    "DomainEvent",
    "EventBus",
    "ApprovalRunStarted",
    "ApprovalStepDecided",
    "ApprovalRunCompleted",
    "RfqPublished",
    "RfqPaused",
    "RfqResumed",
    "ModificationRequested",
    "ModificationDecided",
    "get_event_bus",
    "reset_event_bus_for_tests",
]

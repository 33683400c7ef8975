from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import RLock
from typing import Callable, Dict, List, Tuple, Type

from app.observability import observe_domain_event_emitted


EventHandler = Callable[["DomainEvent"], None]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, kw_only=True)
class DomainEvent:
    """Base for approval-domain events; `workspace_id` falls back to the event's `tenant_id`."""

    event_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    occurred_at: datetime = field(default_factory=_utc_now)
    workspace_id: str = ""

    def __post_init__(self) -> None:
        occurred_at = self.occurred_at if isinstance(self.occurred_at, datetime) else _utc_now()
        if occurred_at.tzinfo is None:
            occurred_at = occurred_at.replace(tzinfo=timezone.utc)
        workspace = str(self.workspace_id or getattr(self, "tenant_id", "") or "").strip()
        object.__setattr__(self, "event_id", str(self.event_id or "").strip() or uuid.uuid4().hex)
        object.__setattr__(self, "occurred_at", occurred_at.astimezone(timezone.utc))
        object.__setattr__(self, "workspace_id", workspace or "unknown")

    @property
    def event_type(self) -> str:
        return type(self).__name__


@dataclass(frozen=True, kw_only=True)
class ApprovalRunStarted(DomainEvent):
    tenant_id: str
    rfq_id: int
    run_id: int
    step_count: int
    template_version: int = 0


@dataclass(frozen=True, kw_only=True)
class ApprovalStepDecided(DomainEvent):
    tenant_id: str
    rfq_id: int
    run_id: int
    step_id: int
    action: str
    actor: str = ""


@dataclass(frozen=True, kw_only=True)
class ApprovalRunCompleted(DomainEvent):
    tenant_id: str
    rfq_id: int
    run_id: int
    status: str


@dataclass(frozen=True, kw_only=True)
class RfqPublished(DomainEvent):
    tenant_id: str
    rfq_id: int
    supplier_count: int = 0


@dataclass(frozen=True, kw_only=True)
class RfqPaused(DomainEvent):
    tenant_id: str
    rfq_id: int
    reason: str = ""
    actor: str = ""


@dataclass(frozen=True, kw_only=True)
class RfqResumed(DomainEvent):
    tenant_id: str
    rfq_id: int
    actor: str = ""


@dataclass(frozen=True, kw_only=True)
class ModificationRequested(DomainEvent):
    tenant_id: str
    rfq_id: int
    modification_id: int
    fields: Tuple[str, ...] = ()


@dataclass(frozen=True, kw_only=True)
class ModificationDecided(DomainEvent):
    tenant_id: str
    rfq_id: int
    modification_id: int
    status: str
    actor: str = ""


class EventBus:
    def __init__(self) -> None:
        self._lock = RLock()
        self._handlers: Dict[Type[DomainEvent], List[EventHandler]] = {}
        self._logger = logging.getLogger("app")

    def subscribe(self, event_type: Type[DomainEvent], handler: EventHandler) -> None:
        """Handlers registered on a base class also receive its subclasses' events."""
        with self._lock:
            self._handlers.setdefault(event_type, []).append(handler)

    def _handlers_for(self, event: DomainEvent) -> List[EventHandler]:
        with self._lock:
            return [
                handler
                for klass in reversed(type(event).__mro__)
                for handler in self._handlers.get(klass, ())
            ]

    def publish(self, event: DomainEvent) -> None:
        observe_domain_event_emitted(event.event_type)
        self._logger.info(
            "domain_event_published",
            extra={"event_type": event.event_type, "event_id": event.event_id, "workspace_id": event.workspace_id},
        )
        for handler in self._handlers_for(event):
            try:
                handler(event)
            except Exception:  # noqa: BLE001
                self._logger.exception("event_handler_failed", extra={"event_type": event.event_type})

    def clear(self) -> None:
        with self._lock:
            self._handlers.clear()


_DEFAULT_EVENT_BUS = EventBus()


def get_event_bus() -> EventBus:
    return _DEFAULT_EVENT_BUS


def reset_event_bus_for_tests() -> None:
    _DEFAULT_EVENT_BUS.clear()

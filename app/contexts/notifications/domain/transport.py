from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Sequence


class MailDeliveryError(RuntimeError):
    def __init__(self, message: str, *, code: str | None = None, definitive: bool = False) -> None:
        super().__init__(message)
        self.code = str(code or "").strip() or None
        self.definitive = bool(definitive)


@dataclass(frozen=True)
class DeliveryResult:
    recipient: str
    sent: bool
    error: str | None = None
    supplier_id: str | None = None
    queued_for_retry: bool = False

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "email": self.recipient or None,
            "sent": self.sent,
            "error": self.error,
        }
        if self.supplier_id is not None:
            payload["supplierId"] = self.supplier_id
        if self.queued_for_retry:
            payload["queuedForRetry"] = True
        return payload


class MailTransport(ABC):
    @abstractmethod
    def send_one(self, to_address: str, subject: str, html_body: str) -> None:
        """Deliver a single message or raise MailDeliveryError."""
        raise NotImplementedError

    def send(self, to_addresses: Sequence[str], subject: str, html_body: str) -> List[DeliveryResult]:
        results: List[DeliveryResult] = []
        for address in to_addresses:
            try:
                self.send_one(address, subject, html_body)
                results.append(DeliveryResult(recipient=address, sent=True))
            except MailDeliveryError as exc:
                results.append(DeliveryResult(recipient=address, sent=False, error=str(exc)))
        return results

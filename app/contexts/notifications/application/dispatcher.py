from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, List, Mapping, Sequence

from flask import current_app

from app.contexts.approvals.domain.supplier_refs import Recipient
from app.contexts.notifications.application import templates
from app.contexts.notifications.domain.transport import DeliveryResult, MailDeliveryError, MailTransport
from app.contexts.notifications.infrastructure.mail_transport import build_mail_transport
from app.contexts.notifications.infrastructure.outbox import enqueue_notification
from app.contexts.notifications.infrastructure.tokens import PURPOSE_APPROVAL, PURPOSE_QUOTE, TokenService
from app.observability import observe_notification_delivery


KIND_RFQ_PUBLISHED = "rfq_published"
KIND_RFQ_CHANGED = "rfq_changed"
KIND_RFQ_PAUSED = "rfq_paused"
KIND_RFQ_RESUMED = "rfq_resumed"
KIND_APPROVAL_REQUIRED = "approval_required"
KIND_APPROVAL_REMINDER = "approval_reminder"


@dataclass(frozen=True)
class OutgoingMessage:
    recipient: str
    subject: str
    html_body: str
    supplier_id: str | None = None


def current_mail_transport() -> MailTransport:
    transport = current_app.extensions.get("mail_transport")
    if transport is None:
        transport = build_mail_transport(current_app.config)
        current_app.extensions["mail_transport"] = transport
    return transport


class NotificationDispatcher:
    """Sends workflow emails; delivery failures come back as results and are parked in the outbox."""

    def __init__(
        self,
        transport: MailTransport,
        *,
        tenant_id: str,
        tokens: TokenService,
        public_base_url: str,
        concurrency: int = 4,
    ) -> None:
        self.transport = transport
        self.tenant_id = tenant_id
        self.tokens = tokens
        self.public_base_url = str(public_base_url or "").rstrip("/")
        self.concurrency = max(1, int(concurrency or 1))

    @classmethod
    def for_current_app(cls, tenant_id: str) -> "NotificationDispatcher":
        config = current_app.config
        return cls(
            current_mail_transport(),
            tenant_id=tenant_id,
            tokens=TokenService.from_config(config),
            public_base_url=config.get("PUBLIC_BASE_URL") or "http://localhost:5000",
            concurrency=int(config.get("NOTIFICATION_SEND_CONCURRENCY") or 4),
        )

    def quote_link(self, rfq_id: int, supplier_id: str | None) -> str:
        token = self.tokens.issue(
            {"rfqId": rfq_id, "supplierId": supplier_id, "tenant_id": self.tenant_id},
            purpose=PURPOSE_QUOTE,
        )
        return f"{self.public_base_url}/supplier/submit-quote?token={token}"

    def approval_link(self, rfq_id: int, step: Mapping[str, Any]) -> str:
        token = self.tokens.issue(
            {
                "rfqId": rfq_id,
                "stepId": int(step["id"]),
                "approverEmail": step.get("approver_email"),
                "tenant_id": self.tenant_id,
            },
            purpose=PURPOSE_APPROVAL,
        )
        return f"{self.public_base_url}/approval/verify?token={token}"

    def _deliver(self, message: OutgoingMessage) -> DeliveryResult:
        try:
            self.transport.send_one(message.recipient, message.subject, message.html_body)
        except MailDeliveryError as exc:
            return DeliveryResult(
                recipient=message.recipient,
                sent=False,
                error=str(exc),
                supplier_id=message.supplier_id,
                queued_for_retry=not exc.definitive,
            )
        return DeliveryResult(recipient=message.recipient, sent=True, supplier_id=message.supplier_id)

    def dispatch(self, db, kind: str, messages: Sequence[OutgoingMessage]) -> List[DeliveryResult]:
        if not messages:
            return []
        workers = min(self.concurrency, len(messages))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="mail") as pool:
            results = list(pool.map(self._deliver, messages))

        for message, result in zip(messages, results):
            if result.sent:
                observe_notification_delivery(kind, "sent")
                continue
            observe_notification_delivery(kind, "failed")
            current_app.logger.warning(
                "notification_delivery_failed",
                extra={
                    "tenant_id": self.tenant_id,
                    "kind": kind,
                    "recipient": message.recipient,
                    "error": result.error,
                    "queued_for_retry": result.queued_for_retry,
                },
            )
            if result.queued_for_retry:
                enqueue_notification(
                    db,
                    tenant_id=self.tenant_id,
                    kind=kind,
                    recipient=message.recipient,
                    subject=message.subject,
                    html_body=message.html_body,
                    last_error=result.error,
                )
        return results

    @staticmethod
    def _missing_email(recipient: Recipient) -> DeliveryResult:
        return DeliveryResult(
            recipient="",
            sent=False,
            error=f"No email found for supplier id {recipient.supplier_id}",
            supplier_id=recipient.supplier_id or None,
        )

    def _fan_out(self, db, kind: str, recipients: Sequence[Recipient], build) -> List[DeliveryResult]:
        results: List[DeliveryResult | None] = []
        messages: List[OutgoingMessage] = []
        for recipient in recipients:
            if not recipient.email:
                results.append(self._missing_email(recipient))
                observe_notification_delivery(kind, "no_email")
                continue
            subject, html_body = build(recipient)
            messages.append(
                OutgoingMessage(
                    recipient=recipient.email,
                    subject=subject,
                    html_body=html_body,
                    supplier_id=recipient.supplier_id or None,
                )
            )
            results.append(None)

        delivered = iter(self.dispatch(db, kind, messages))
        return [result if result is not None else next(delivered) for result in results]

    def notify_rfq_published(self, db, rfq: Mapping[str, Any], recipients: Sequence[Recipient]) -> List[DeliveryResult]:
        register_link = f"{self.public_base_url}/sign-up"

        def build(recipient: Recipient):
            return templates.rfq_published(
                rfq,
                quote_link=self.quote_link(int(rfq["id"]), recipient.supplier_id or None),
                register_link=register_link,
            )

        return self._fan_out(db, KIND_RFQ_PUBLISHED, recipients, build)

    def notify_rfq_changed(
        self,
        db,
        rfq: Mapping[str, Any],
        recipients: Sequence[Recipient],
        changes: Mapping[str, Mapping[str, Any]],
        *,
        labels: Mapping[str, str] | None = None,
        subject_template: str | None = None,
        body_template: str | None = None,
    ) -> List[DeliveryResult]:
        subject, html_body = templates.rfq_changed(
            rfq,
            changes,
            labels=labels,
            subject_template=subject_template,
            body_template=body_template,
        )
        return self._fan_out(db, KIND_RFQ_CHANGED, recipients, lambda _recipient: (subject, html_body))

    def notify_rfq_paused(
        self,
        db,
        rfq: Mapping[str, Any],
        recipients: Sequence[Recipient],
        *,
        reason: str | None,
        paused_by: str | None,
    ) -> List[DeliveryResult]:
        subject, html_body = templates.rfq_paused(rfq, reason=reason, paused_by=paused_by)
        return self._fan_out(db, KIND_RFQ_PAUSED, recipients, lambda _recipient: (subject, html_body))

    def notify_rfq_resumed(
        self, db, rfq: Mapping[str, Any], recipients: Sequence[Recipient], *, resumed_by: str | None
    ) -> List[DeliveryResult]:
        subject, html_body = templates.rfq_resumed(rfq, resumed_by=resumed_by)
        return self._fan_out(db, KIND_RFQ_RESUMED, recipients, lambda _recipient: (subject, html_body))

    def notify_approver(self, db, step: Mapping[str, Any], rfq: Mapping[str, Any]) -> DeliveryResult:
        link = self.approval_link(int(rfq["id"]), step)
        subject, html_body = templates.approval_required(rfq, step, approval_link=link)
        return self._notify_step(db, KIND_APPROVAL_REQUIRED, step, subject, html_body)

    def notify_sla_reminder(self, db, step: Mapping[str, Any], rfq: Mapping[str, Any]) -> DeliveryResult:
        link = self.approval_link(int(rfq["id"]), step)
        subject, html_body = templates.approval_reminder(rfq, step, approval_link=link)
        return self._notify_step(db, KIND_APPROVAL_REMINDER, step, subject, html_body)

    def _notify_step(self, db, kind: str, step: Mapping[str, Any], subject: str, html_body: str) -> DeliveryResult:
        email = str(step.get("approver_email") or "").strip()
        if not email:
            observe_notification_delivery(kind, "no_email")
            return DeliveryResult(recipient="", sent=False, error="approver has no email")
        return self.dispatch(db, kind, [OutgoingMessage(recipient=email, subject=subject, html_body=html_body)])[0]

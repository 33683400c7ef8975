from __future__ import annotations

import json
from html import escape
from typing import Any, Dict, Iterable, Mapping, Tuple

from app.ui_strings import email_subject


_LAYOUT = """
<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
    <div style="background: #1e293b; color: white; padding: 16px 24px; border-radius: 8px 8px 0 0;">
        <h2 style="margin: 0; font-size: 18px;">{heading}</h2>
    </div>
    <div style="background: #f8fafc; padding: 24px; border: 1px solid #e2e8f0; border-top: none;">
        {content}
    </div>
</div>
"""


class _SafeDict(dict):
    """Leaves unknown placeholders in admin-authored templates untouched."""

    def __missing__(self, key):
        return f"{{{key}}}"


_FORMAT_ERRORS = (AttributeError, IndexError, KeyError, TypeError, ValueError)

# Placeholders available to admin-authored change notices.
_SAMPLE_VALUES = {"title": "RFQ", "rfq_id": 1, "fields": "Currency"}


def template_error(template: str | None) -> str | None:
    """Why an admin-authored template cannot be rendered, or None when it can."""
    if not template:
        return None
    try:
        template.format_map(_SafeDict(_SAMPLE_VALUES))
    except _FORMAT_ERRORS as exc:
        return str(exc) or type(exc).__name__
    return None


def _render(template: str | None, values: Mapping[str, Any]) -> str | None:
    if not template:
        return None
    try:
        return template.format_map(_SafeDict(values))
    except _FORMAT_ERRORS:
        return None


def _layout(heading: str, content: str) -> str:
    return _LAYOUT.format(heading=escape(heading), content=content)


def _display(value: Any) -> str:
    if value is None or value == "":
        return "-"
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False, default=str)
    return str(value)


def rfq_published(rfq: Mapping[str, Any], *, quote_link: str, register_link: str) -> Tuple[str, str]:
    fields = rfq.get("fields") or {}
    title = str(rfq.get("title") or "")
    close_at = _display(fields.get("closeDateTime") or fields.get("closeDate"))
    notes = _display(fields.get("noteToSupplier"))
    content = f"""
        <p>You have been invited to quote on <strong>{escape(title)}</strong>.</p>
        <p><strong>Closes:</strong> {escape(close_at)}</p>
        <p><strong>Notes:</strong> {escape(notes)}</p>
        <p><a href="{escape(quote_link, quote=True)}">Submit your quote</a></p>
        <p style="color: #64748b;">Not registered yet? <a href="{escape(register_link, quote=True)}">Create your account</a>.</p>
    """
    return email_subject("rfq_published_subject", title=title), _layout("New RFQ", content)


def rfq_changed(
    rfq: Mapping[str, Any],
    changes: Mapping[str, Mapping[str, Any]],
    *,
    labels: Mapping[str, str] | None = None,
    subject_template: str | None = None,
    body_template: str | None = None,
) -> Tuple[str, str]:
    title = str(rfq.get("title") or "")
    labels = labels or {}
    rows = "".join(
        f"<tr><td style=\"padding: 4px 8px;\">{escape(labels.get(key, key))}</td>"
        f"<td style=\"padding: 4px 8px;\">{escape(_display(change.get('from')))}</td>"
        f"<td style=\"padding: 4px 8px;\">{escape(_display(change.get('to')))}</td></tr>"
        for key, change in changes.items()
    )
    values = {"title": title, "rfq_id": rfq.get("id"), "fields": ", ".join(labels.get(k, k) for k in changes)}
    subject = _render(subject_template, values) or email_subject("rfq_changed_subject", title=title)
    body = _render(body_template, values)
    intro = escape(body) if body else f"The RFQ <strong>{escape(title)}</strong> has been updated."
    content = f"""
        <p>{intro}</p>
        <table style="width: 100%; border-collapse: collapse;">
            <tr style="background: #e2e8f0;"><th>Field</th><th>Previous</th><th>New</th></tr>
            {rows}
        </table>
    """
    return subject, _layout("RFQ updated", content)


def rfq_paused(rfq: Mapping[str, Any], *, reason: str | None, paused_by: str | None) -> Tuple[str, str]:
    title = str(rfq.get("title") or "")
    content = f"""
        <p>The RFQ <strong>{escape(title)}</strong> has been paused by {escape(_display(paused_by))}.</p>
        <p><strong>Reason:</strong> {escape(reason or "Not specified")}</p>
        <p>Quotes are not accepted until the RFQ is resumed.</p>
    """
    return email_subject("rfq_paused_subject", title=title), _layout("RFQ paused", content)


def rfq_resumed(rfq: Mapping[str, Any], *, resumed_by: str | None) -> Tuple[str, str]:
    title = str(rfq.get("title") or "")
    content = f"""
        <p>The RFQ <strong>{escape(title)}</strong> has been resumed by {escape(_display(resumed_by))}.</p>
        <p>Please continue with bidding as applicable.</p>
    """
    return email_subject("rfq_resumed_subject", title=title), _layout("RFQ resumed", content)


def approval_required(rfq: Mapping[str, Any], step: Mapping[str, Any], *, approval_link: str) -> Tuple[str, str]:
    title = str(rfq.get("title") or "")
    content = f"""
        <p>Hello {escape(str(step.get('approver_name') or ''))},</p>
        <p>Your approval is required as <strong>{escape(str(step.get('role') or ''))}</strong>
        for <strong>{escape(title)}</strong>.</p>
        <p><strong>SLA:</strong> {escape(_display(step.get('sla_duration')))}</p>
        <p><a href="{escape(approval_link, quote=True)}">Review and decide</a></p>
    """
    return email_subject("approval_required_subject", title=title), _layout("Approval required", content)


def approval_reminder(rfq: Mapping[str, Any], step: Mapping[str, Any], *, approval_link: str) -> Tuple[str, str]:
    title = str(rfq.get("title") or "")
    content = f"""
        <p>The approval step <strong>{escape(str(step.get('role') or ''))}</strong> for
        <strong>{escape(title)}</strong> is past its SLA ({escape(_display(step.get('sla_duration')))}).</p>
        <p><a href="{escape(approval_link, quote=True)}">Review and decide</a></p>
    """
    return email_subject("approval_reminder_subject", title=title), _layout("Approval overdue", content)


def field_labels(rules: Iterable[Any]) -> Dict[str, str]:
    return {rule.field_key: rule.label for rule in rules}

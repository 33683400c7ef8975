from __future__ import annotations

from typing import Dict, List


FRIENDLY_TERMS: Dict[str, str] = {
    "app_name": "RFQ Approvals",
    "rfq": "RFQ",
    "approval_run": "Approval run",
    "approval_step": "Approval step",
    "modification_request": "Modification request",
    "pause_request": "Pause request",
    "supplier": "Supplier",
    "approver": "Approver",
}


STATUS_GROUPS: Dict[str, List[Dict[str, str]]] = {
    "rfq_approval": [
        {"key": "none", "label": "Not submitted", "description": "RFQ has not entered approval."},
        {"key": "pending", "label": "Pending approval", "description": "Approval run in progress."},
        {"key": "approved", "label": "Approved", "description": "Every required step approved."},
        {"key": "rejected", "label": "Rejected", "description": "A required approver rejected the RFQ."},
    ],
    "approval_run": [
        {"key": "PENDING", "label": "In progress", "description": "Waiting for approver decisions."},
        {"key": "APPROVED", "label": "Approved", "description": "All required steps approved."},
        {"key": "REJECTED", "label": "Rejected", "description": "Halted by a required rejection."},
        {"key": "WITHDRAWN", "label": "Withdrawn", "description": "Withdrawn by the requester."},
    ],
    "approval_step": [
        {"key": "PENDING", "label": "Pending", "description": "Awaiting the approver."},
        {"key": "APPROVED", "label": "Approved", "description": "Approver accepted."},
        {"key": "REJECTED", "label": "Rejected", "description": "Approver declined."},
        {"key": "SKIPPED", "label": "Skipped", "description": "No longer actionable."},
    ],
    "modification": [
        {"key": "pending", "label": "Pending", "description": "Proposed change waiting for approval."},
        {"key": "approved", "label": "Approved", "description": "Change merged into the RFQ."},
        {"key": "rejected", "label": "Rejected", "description": "Change discarded."},
    ],
    "pause_request": [
        {"key": "pending", "label": "Pending", "description": "Pause waiting for an administrator."},
        {"key": "approved", "label": "Approved", "description": "RFQ was paused."},
        {"key": "rejected", "label": "Rejected", "description": "Pause was declined."},
    ],
}


MESSAGES: Dict[str, Dict[str, str]] = {
    "error": {
        "unexpected_error": "The operation could not be completed.",
        "action_invalid": "Invalid action.",
        "conflict": "The record changed in the meantime. Reload and try again.",
        "validation_error": "The request payload is invalid.",
        "permission_denied": "You do not have permission for this action.",
        "auth_required": "Sign in to continue.",
        "invalid_credentials": "Invalid email or password.",
        "rate_limited": "Too many requests. Try again shortly.",
        "not_found": "Record not found.",
        "rfq_not_found": "RFQ not found.",
        "step_not_found": "Approval step not found.",
        "run_not_found": "No approval run found for this RFQ.",
        "approver_not_found": "Approver not found.",
        "modification_not_found": "Modification request not found.",
        "step_already_decided": "This step has already been decided.",
        "step_not_active": "Earlier approval steps must be decided first.",
        "run_already_active": "An approval run already exists for this RFQ.",
        "run_not_pending": "This approval run is no longer pending.",
        "no_active_run": "There is no pending approval run to withdraw.",
        "not_assigned_approver": "Only the assigned approver can decide this step.",
        "not_modification_approver": "You are not an approver for modification requests.",
        "modification_not_pending": "This modification request has already been processed.",
        "rfq_locked_pending_approval": "The RFQ is locked while its approval is pending.",
        "field_not_editable": "One or more fields cannot be edited.",
        "no_changes": "No changes detected.",
        "invalid_action": "Action must be approve or reject.",
        "invalid_token": "The link is invalid or has expired.",
        "invalid_approver_reference": "The workflow references an unknown approver.",
        "approver_in_use": "The approver is referenced by the workflow template.",
        "approver_email_taken": "An approver with this email already exists.",
        "template_version_conflict": "The workflow template was changed by someone else.",
        "duplicate_field_key": "Field keys must be unique.",
        "invalid_notification_template": "The supplier notification template cannot be rendered.",
        "pause_request_not_found": "Pause request not found.",
        "rfq_not_published": "Only a published RFQ can be paused.",
        "rfq_not_paused": "The RFQ is not paused.",
        "rfq_paused": "The RFQ is paused and not accepting quotes.",
        "rfq_already_paused": "The RFQ is already paused.",
        "pause_request_pending": "A pause request for this RFQ is already waiting for approval.",
        "pause_request_not_pending": "This pause request has already been processed.",
    },
    "success": {
        "template_saved": "Workflow template saved.",
        "rules_saved": "Modification rules saved.",
        "rfq_submitted": "RFQ submitted for approval.",
        "rfq_auto_approved": "Auto-approved (no workflow defined)",
        "step_approved": "Step approved.",
        "step_rejected": "Step rejected.",
        "run_withdrawn": "Approval withdrawn.",
        "changes_applied": "Changes applied.",
        "changes_queued": "Changes submitted for approval.",
        "modification_approved": "Modification approved.",
        "modification_rejected": "Modification rejected.",
        "rfq_paused": "RFQ paused.",
        "rfq_resumed": "RFQ resumed.",
        "pause_requested": "Pause request submitted for approval.",
        "pause_request_approved": "Pause request approved.",
        "pause_request_rejected": "Pause request rejected.",
    },
    "email": {
        "rfq_published_subject": "New RFQ published: {title}",
        "rfq_changed_subject": "RFQ updated: {title}",
        "approval_required_subject": "Approval Required: {title}",
        "approval_reminder_subject": "Reminder - approval overdue: {title}",
        "rfq_paused_subject": "RFQ paused: {title}",
        "rfq_resumed_subject": "RFQ resumed: {title}",
    },
}


def status_items_for_group(group: str) -> List[Dict[str, str]]:
    return list(STATUS_GROUPS.get(group, []))


def get_message(category: str, key: str, default: str | None = None) -> str:
    message = MESSAGES.get(category, {}).get(key)
    if message:
        return message
    if default is not None:
        return default
    return key


def error_message(key: str, default: str | None = None) -> str:
    return get_message("error", key, default)


def success_message(key: str, default: str | None = None) -> str:
    return get_message("success", key, default)


def email_subject(key: str, **values: object) -> str:
    template = get_message("email", key, key)
    try:
        return template.format(**values)
    except (KeyError, IndexError):
        return template

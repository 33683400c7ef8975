from app.contexts.approvals.infrastructure.repositories.approver_repository import ApproverRepository
from app.contexts.approvals.infrastructure.repositories.modification_repository import (
    ModificationRequestRepository,
    ModificationRuleRepository,
)
from app.contexts.approvals.infrastructure.repositories.pause_repository import PauseRequestRepository
from app.contexts.approvals.infrastructure.repositories.rfq_repository import RfqRepository
from app.contexts.approvals.infrastructure.repositories.run_repository import ApprovalRunRepository
from app.contexts.approvals.infrastructure.repositories.status_event_repository import StatusEventRepository
from app.contexts.approvals.infrastructure.repositories.supplier_repository import SupplierRepository
from app.contexts.approvals.infrastructure.repositories.template_repository import WorkflowTemplateRepository

__all__ = [
    "ApproverRepository",
    "ApprovalRunRepository",
    "ModificationRequestRepository",
    "ModificationRuleRepository",
    "PauseRequestRepository",
    "RfqRepository",
    "StatusEventRepository",
    "SupplierRepository",
    "WorkflowTemplateRepository",
]

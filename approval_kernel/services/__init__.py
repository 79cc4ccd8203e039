"""Services for the approval kernel (write side)."""

from approval_kernel.services.flow_instance_manager import FlowInstanceManager
from approval_kernel.services.step_ledger import StepLedger
from approval_kernel.services.template_service import TemplateService
from approval_kernel.services.user_service import UserService
from approval_kernel.services.workflow_engine import WorkflowEngine

__all__ = [
    "FlowInstanceManager",
    "StepLedger",
    "TemplateService",
    "UserService",
    "WorkflowEngine",
]

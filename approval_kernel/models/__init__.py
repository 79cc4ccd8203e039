"""ORM models for the approval kernel."""

from approval_kernel.models.approval import ApprovalActionModel, ApprovalRequestModel
from approval_kernel.models.flow import (
    FlowInstanceModel,
    FlowStepModel,
    FlowTemplateModel,
)
from approval_kernel.models.user import UserModel

__all__ = [
    "ApprovalActionModel",
    "ApprovalRequestModel",
    "FlowInstanceModel",
    "FlowStepModel",
    "FlowTemplateModel",
    "UserModel",
]

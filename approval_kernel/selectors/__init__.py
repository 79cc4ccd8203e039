"""Selectors for the approval kernel (read side)."""

from approval_kernel.selectors.request_selector import RequestSelector

__all__ = ["RequestSelector"]

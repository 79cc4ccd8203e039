"""
Approval Kernel

The approval workflow core of an approval-request tracker:
- Typed, validated flow template graphs
- A per-request flow instance state machine
- An append-only, contiguous step ledger
- Single-writer-per-instance persistence behind a repository port
"""

__version__ = "0.1.0"

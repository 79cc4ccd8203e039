"""
Typed Exception Hierarchy for the Approval Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Callers of the workflow engine (an approval UI, an API layer, a batch job)
must react differently to "the template is malformed", "someone already
decided this step" and "your view is out of date, refresh".  Parsing message
strings for that is fragile, so:

  1. Every error has a TYPED exception class (catch by type, not message)
  2. Every exception has a CODE attribute (machine-readable, API-safe)
  3. Exceptions carry structured DATA (not just a message string)

Example:
    try:
        engine.submit_decision(command)
    except NodeMismatchError as e:
        api_response(409, code=e.code, current=e.current_node_id)
    except AlreadyTerminalError as e:
        api_response(409, code=e.code, status=e.status)

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    ApprovalKernelError (base)
    |
    +-- GraphError                  surfaced at template save time
    |   +-- MissingStartError
    |   +-- MultipleStartError
    |   +-- MissingEndError
    |   +-- NoApproversError
    |   +-- UnreachableNodeError
    |   +-- CycleDetectedError
    |   +-- DanglingEdgeError
    |   +-- DeadEndNodeError
    |   +-- DuplicateNodeError
    |   +-- GraphDecodeError
    |
    +-- LedgerError                 stale caller or concurrency bug
    |   +-- StepSequenceError
    |   +-- StepNotFoundError
    |   +-- StepAlreadyDecidedError
    |   +-- ApproverMismatchError
    |   +-- LivePlaceholderError
    |
    +-- EngineError                 client visible decision conflicts
    |   +-- AlreadyTerminalError
    |   +-- NodeMismatchError
    |   +-- InvalidDecisionError
    |   +-- InvalidFlowTransitionError
    |
    +-- NotFoundError               404-equivalent
    |   +-- TemplateNotFoundError
    |   +-- InstanceNotFoundError
    |   +-- RequestNotFoundError
    |   +-- UserNotFoundError
    |
    +-- ConcurrencyError            safe to retry the whole operation
    |   +-- InstanceLockedError
    |   +-- ConcurrencyConflictError
    |
    +-- PersistenceError            transaction rolled back
    |
    +-- ImmutabilityError
    |   +-- ImmutabilityViolationError
    |
    +-- ValidationError
        +-- DuplicateUserError
        +-- InvalidRequestError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category     | Code                     | When Raised
-------------|--------------------------|-------------------------------------
Graph        | GRAPH_MISSING_START      | No start node
             | GRAPH_MULTIPLE_START     | More than one start node
             | GRAPH_MISSING_END        | No end node
             | GRAPH_NO_APPROVERS       | No approver node
             | GRAPH_UNREACHABLE_NODE   | Approver not reachable from start
             | GRAPH_CYCLE_DETECTED     | Cycle reachable from start
             | GRAPH_DANGLING_EDGE      | Edge names an unknown node
             | GRAPH_DEAD_END           | Non-end node without outgoing edge
             | GRAPH_DUPLICATE_NODE     | Node id used twice
             | GRAPH_DECODE_FAILED      | Persisted JSON is not a graph
-------------|--------------------------|-------------------------------------
Ledger       | STEP_SEQUENCE_VIOLATION  | Step index gap or duplicate
             | STEP_NOT_FOUND           | No placeholder at index
             | STEP_ALREADY_DECIDED     | Step already approved/rejected
             | APPROVER_MISMATCH        | Approver not allowed for node
             | STEP_LIVE_PLACEHOLDER    | Current step decided outside engine
-------------|--------------------------|-------------------------------------
Engine       | ALREADY_TERMINAL         | Instance completed or rejected
             | NODE_MISMATCH            | Decision for a non-current node
             | INVALID_DECISION         | Decision is not approved/rejected
             | INVALID_FLOW_TRANSITION  | Status would move backwards
-------------|--------------------------|-------------------------------------
Not found    | TEMPLATE_NOT_FOUND       | Template missing/inactive/deleted
             | INSTANCE_NOT_FOUND       | Flow instance missing/deleted
             | REQUEST_NOT_FOUND        | Request missing/deleted
             | USER_NOT_FOUND           | User missing/deleted
-------------|--------------------------|-------------------------------------
Concurrency  | INSTANCE_LOCKED          | Another writer holds the instance
             | CONCURRENCY_CONFLICT     | Instance version changed under us
-------------|--------------------------|-------------------------------------
Persistence  | PERSISTENCE_FAILURE      | Store failure, rolled back
-------------|--------------------------|-------------------------------------
Immutability | IMMUTABILITY_VIOLATION   | Modifying an append-only record
-------------|--------------------------|-------------------------------------
Validation   | DUPLICATE_USER           | Email already registered
             | INVALID_REQUEST          | Creation command is malformed
"""


class ApprovalKernelError(Exception):
    """
    Base exception for all approval kernel errors.

    All subclasses must have a `code` class attribute for machine-readable
    error identification.
    """

    code: str = "APPROVAL_KERNEL_ERROR"


# Graph-related exceptions


class GraphError(ApprovalKernelError):
    """Base exception for structurally invalid template graphs."""

    code: str = "GRAPH_ERROR"


class MissingStartError(GraphError):
    """Template graph has no start node."""

    code: str = "GRAPH_MISSING_START"

    def __init__(self):
        super().__init__("Template graph has no start node")


class MultipleStartError(GraphError):
    """Template graph has more than one start node."""

    code: str = "GRAPH_MULTIPLE_START"

    def __init__(self, node_ids: list[str]):
        self.node_ids = node_ids
        super().__init__(
            f"Template graph must have exactly one start node, found {node_ids}"
        )


class MissingEndError(GraphError):
    """Template graph has no end node."""

    code: str = "GRAPH_MISSING_END"

    def __init__(self):
        super().__init__("Template graph has no end node")


class NoApproversError(GraphError):
    """Template graph has no approver node."""

    code: str = "GRAPH_NO_APPROVERS"

    def __init__(self):
        super().__init__("Template graph has no approver node")


class UnreachableNodeError(GraphError):
    """An approver node cannot be reached from the start node."""

    code: str = "GRAPH_UNREACHABLE_NODE"

    def __init__(self, node_id: str):
        self.node_id = node_id
        super().__init__(f"Node {node_id} is not reachable from start")


class CycleDetectedError(GraphError):
    """The graph contains a cycle reachable from the start node."""

    code: str = "GRAPH_CYCLE_DETECTED"

    def __init__(self, path: list[str]):
        self.path = path
        super().__init__(f"Cycle detected: {' -> '.join(path)}")


class DanglingEdgeError(GraphError):
    """An edge references a node id that does not exist."""

    code: str = "GRAPH_DANGLING_EDGE"

    def __init__(self, source: str, target: str, missing: str):
        self.source = source
        self.target = target
        self.missing = missing
        super().__init__(
            f"Edge {source} -> {target} references unknown node {missing}"
        )


class DeadEndNodeError(GraphError):
    """A non-end node has no outgoing edge."""

    code: str = "GRAPH_DEAD_END"

    def __init__(self, node_id: str, kind: str):
        self.node_id = node_id
        self.kind = kind
        super().__init__(f"{kind} node {node_id} has no outgoing edge")


class DuplicateNodeError(GraphError):
    """Two nodes share the same id."""

    code: str = "GRAPH_DUPLICATE_NODE"

    def __init__(self, node_id: str):
        self.node_id = node_id
        super().__init__(f"Duplicate node id: {node_id}")


class GraphDecodeError(GraphError):
    """Persisted node/edge JSON could not be decoded into a graph."""

    code: str = "GRAPH_DECODE_FAILED"

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Cannot decode template graph: {reason}")


# Ledger-related exceptions


class LedgerError(ApprovalKernelError):
    """Base exception for step ledger consistency violations."""

    code: str = "LEDGER_ERROR"


class StepSequenceError(LedgerError):
    """Appended step index is not exactly last index + 1."""

    code: str = "STEP_SEQUENCE_VIOLATION"

    def __init__(self, instance_id: str, expected_index: int, received_index: int):
        self.instance_id = instance_id
        self.expected_index = expected_index
        self.received_index = received_index
        super().__init__(
            f"Step index {received_index} rejected for instance {instance_id}: "
            f"expected {expected_index}"
        )


class StepNotFoundError(LedgerError):
    """No step record exists at the given index."""

    code: str = "STEP_NOT_FOUND"

    def __init__(self, instance_id: str, step_index: int):
        self.instance_id = instance_id
        self.step_index = step_index
        super().__init__(f"No step {step_index} for instance {instance_id}")


class StepAlreadyDecidedError(LedgerError):
    """The step record already carries a terminal decision."""

    code: str = "STEP_ALREADY_DECIDED"

    def __init__(self, instance_id: str, step_index: int, decision: str):
        self.instance_id = instance_id
        self.step_index = step_index
        self.decision = decision
        super().__init__(
            f"Step {step_index} of instance {instance_id} already {decision}"
        )


class ApproverMismatchError(LedgerError):
    """The approver is not assigned to the node being decided."""

    code: str = "APPROVER_MISMATCH"

    def __init__(self, node_id: str, approver_id: str, allowed: list[str]):
        self.node_id = node_id
        self.approver_id = approver_id
        self.allowed = allowed
        super().__init__(
            f"Approver {approver_id} may not decide node {node_id} "
            f"(allowed: {allowed})"
        )


class LivePlaceholderError(LedgerError):
    """The step is the current placeholder of an in-progress instance.

    Only the workflow engine decides it; the same unit moves the instance
    and the request projection.
    """

    code: str = "STEP_LIVE_PLACEHOLDER"

    def __init__(self, instance_id: str, step_index: int, node_id: str):
        self.instance_id = instance_id
        self.step_index = step_index
        self.node_id = node_id
        super().__init__(
            f"Step {step_index} is the current placeholder of instance "
            f"{instance_id} at node {node_id}; submit it through the engine"
        )


# Engine-related exceptions


class EngineError(ApprovalKernelError):
    """Base exception for workflow engine decision conflicts."""

    code: str = "ENGINE_ERROR"


class AlreadyTerminalError(EngineError):
    """The instance is completed or rejected; no decisions are accepted."""

    code: str = "ALREADY_TERMINAL"

    def __init__(self, instance_id: str, status: str):
        self.instance_id = instance_id
        self.status = status
        super().__init__(f"Instance {instance_id} is already {status}")


class NodeMismatchError(EngineError):
    """The decision targets a node other than the instance's current node."""

    code: str = "NODE_MISMATCH"

    def __init__(self, instance_id: str, current_node_id: str, received_node_id: str):
        self.instance_id = instance_id
        self.current_node_id = current_node_id
        self.received_node_id = received_node_id
        super().__init__(
            f"Instance {instance_id} is at node {current_node_id}, "
            f"decision targeted {received_node_id}"
        )


class InvalidDecisionError(EngineError):
    """The submitted decision is not approved or rejected."""

    code: str = "INVALID_DECISION"

    def __init__(self, decision: str):
        self.decision = decision
        super().__init__(f"Invalid decision: {decision}")


class InvalidFlowTransitionError(EngineError):
    """Instance status would move to a state not allowed from its current one."""

    code: str = "INVALID_FLOW_TRANSITION"

    def __init__(self, from_status: str, to_status: str):
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(f"Invalid flow transition: {from_status} -> {to_status}")


# Not-found exceptions


class NotFoundError(ApprovalKernelError):
    """Base exception for missing (or tombstoned) entities."""

    code: str = "NOT_FOUND"


class TemplateNotFoundError(NotFoundError):
    """Template does not exist, is inactive, or was deleted."""

    code: str = "TEMPLATE_NOT_FOUND"

    def __init__(self, template_id: str):
        self.template_id = template_id
        super().__init__(f"Template not found: {template_id}")


class InstanceNotFoundError(NotFoundError):
    """Flow instance does not exist or was deleted."""

    code: str = "INSTANCE_NOT_FOUND"

    def __init__(self, instance_id: str):
        self.instance_id = instance_id
        super().__init__(f"Flow instance not found: {instance_id}")


class RequestNotFoundError(NotFoundError):
    """Approval request does not exist or was deleted."""

    code: str = "REQUEST_NOT_FOUND"

    def __init__(self, request_id: str):
        self.request_id = request_id
        super().__init__(f"Approval request not found: {request_id}")


class UserNotFoundError(NotFoundError):
    """User does not exist or was deleted."""

    code: str = "USER_NOT_FOUND"

    def __init__(self, user_id: str):
        self.user_id = user_id
        super().__init__(f"User not found: {user_id}")


# Concurrency-related exceptions


class ConcurrencyError(ApprovalKernelError):
    """Base exception for concurrency-related errors."""

    code: str = "CONCURRENCY_ERROR"


class InstanceLockedError(ConcurrencyError):
    """Another writer holds the per-instance lock."""

    code: str = "INSTANCE_LOCKED"

    def __init__(self, instance_id: str):
        self.instance_id = instance_id
        super().__init__(
            f"Flow instance {instance_id} is locked by another writer; retry"
        )


class ConcurrencyConflictError(ConcurrencyError):
    """Optimistic version check failed on commit."""

    code: str = "CONCURRENCY_CONFLICT"

    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(
            f"Concurrent modification of {entity_type} {entity_id}: "
            "entity was modified by another transaction"
        )


# Persistence exceptions


class PersistenceError(ApprovalKernelError):
    """The store failed; the whole unit of work was rolled back."""

    code: str = "PERSISTENCE_FAILURE"

    def __init__(self, operation: str, reason: str):
        self.operation = operation
        self.reason = reason
        super().__init__(f"Persistence failure during {operation}: {reason}")


# Immutability-related exceptions


class ImmutabilityError(ApprovalKernelError):
    """Base exception for immutability-related errors."""

    code: str = "IMMUTABILITY_ERROR"


class ImmutabilityViolationError(ImmutabilityError):
    """
    Attempted to modify or delete an append-only record.

    Step records may only move from pending to a decision (and be
    tombstoned); approval actions may only be tombstoned.
    """

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Immutability violation on {entity_type} {entity_id}: {reason}"
        )


# Validation exceptions


class ValidationError(ApprovalKernelError):
    """Base exception for malformed input."""

    code: str = "VALIDATION_ERROR"


class DuplicateUserError(ValidationError):
    """A user with this email already exists."""

    code: str = "DUPLICATE_USER"

    def __init__(self, email: str):
        self.email = email
        super().__init__(f"User already exists: {email}")


class InvalidRequestError(ValidationError):
    """An approval request creation command is malformed."""

    code: str = "INVALID_REQUEST"

    def __init__(self, field: str, reason: str):
        self.field = field
        self.reason = reason
        super().__init__(f"Invalid request field {field}: {reason}")

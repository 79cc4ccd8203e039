"""Builders shared by the test modules."""

from approval_kernel.domain.dtos import TemplateDefinition
from approval_kernel.domain.graph import encode_graph, linear_graph


def definition_from_graph(graph, name="Test flow", category="general", description=""):
    """Build an authored template definition from a typed graph."""
    nodes, edges = encode_graph(graph)
    return TemplateDefinition(
        name=name,
        nodes=tuple(nodes),
        edges=tuple(edges),
        description=description,
        category=category,
    )


def linear_definition(*approvers, name="Test flow", category="general"):
    """Definition of a start -> approver-1..n -> end chain.

    Each positional argument is the approver-id collection of one node
    (None for "anyone").
    """
    return definition_from_graph(linear_graph(*approvers), name=name, category=category)


def editor_node(node_id, kind, **data):
    """A node in the flow editor's JSON shape."""
    return {"id": node_id, "type": kind, "data": {"label": node_id, "type": kind, **data}}


def editor_edge(source, target):
    return {"id": f"e{source}-{target}", "source": source, "target": target}

"""Workflow graph validation.

Produces structured issues (severity, code, message, location) for the
editor, and a hard gate used at submission: any error-level issue
rejects the graph before it is queued.
"""

from dataclasses import dataclass, field
from typing import Optional, Sequence

from core.constants import ValidationSeverity, normalize_block_type
from core.exceptions import GraphInvalidError
from workflow.models import Edge, Node, WorkflowDefinition


@dataclass
class ValidationIssue:
    severity: ValidationSeverity
    code: str
    message: str
    node_id: Optional[str] = None
    edge_id: Optional[str] = None

    def to_dict(self) -> dict:
        location = {}
        if self.node_id is not None:
            location["node_id"] = self.node_id
        if self.edge_id is not None:
            location["edge_id"] = self.edge_id
        return {
            "severity": self.severity.value,
            "code": self.code,
            "message": self.message,
            "location": location,
        }


@dataclass
class ValidationResult:
    errors: list[ValidationIssue] = field(default_factory=list)
    warnings: list[ValidationIssue] = field(default_factory=list)
    info: list[ValidationIssue] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors

    def add(self, issue: ValidationIssue) -> None:
        if issue.severity == ValidationSeverity.ERROR:
            self.errors.append(issue)
        elif issue.severity == ValidationSeverity.WARN:
            self.warnings.append(issue)
        else:
            self.info.append(issue)

    def to_dict(self) -> dict:
        return {
            "valid": self.valid,
            "errors": [i.to_dict() for i in self.errors],
            "warnings": [i.to_dict() for i in self.warnings],
            "info": [i.to_dict() for i in self.info],
        }


def _is_trigger(node: Node) -> bool:
    if node.data.get("blockType") == "trigger" or node.type == "input":
        return True
    block_type = normalize_block_type(node.block_type)
    return bool(block_type and block_type.is_trigger)


def detect_cycles(nodes: Sequence[Node], edges: Sequence[Edge]) -> list[list[str]]:
    """Return one node-id path per cycle found by iterative DFS."""
    adjacency: dict[str, list[str]] = {n.id: [] for n in nodes}
    for edge in edges:
        if edge.source in adjacency and edge.target in adjacency:
            adjacency[edge.source].append(edge.target)

    cycles: list[list[str]] = []
    visited: set[str] = set()

    for root in adjacency:
        if root in visited:
            continue
        path: list[str] = [root]
        on_path: set[str] = {root}
        visited.add(root)
        stack = [iter(adjacency[root])]
        while stack:
            advanced = False
            for neighbor in stack[-1]:
                if neighbor in on_path:
                    cycles.append(path[path.index(neighbor):])
                    continue
                if neighbor not in visited:
                    visited.add(neighbor)
                    path.append(neighbor)
                    on_path.add(neighbor)
                    stack.append(iter(adjacency[neighbor]))
                    advanced = True
                    break
            if not advanced:
                stack.pop()
                on_path.discard(path.pop())

    return cycles


def validate_workflow(nodes: Sequence[Node], edges: Sequence[Edge]) -> ValidationResult:
    """Validate a workflow graph and collect every issue found."""
    result = ValidationResult()

    # Rule 1: must have at least one node
    if not nodes:
        result.add(ValidationIssue(
            ValidationSeverity.ERROR,
            "EMPTY_WORKFLOW",
            "Workflow must have at least one node",
        ))

    # Rule 2: duplicate node ids
    seen: set[str] = set()
    for node in nodes:
        if node.id in seen:
            result.add(ValidationIssue(
                ValidationSeverity.ERROR,
                "DUPLICATE_NODE_ID",
                f'Duplicate node ID detected: "{node.id}"',
                node_id=node.id,
            ))
        seen.add(node.id)

    # Rule 3: edge endpoints must exist, no self loops
    for edge in edges:
        if edge.source not in seen:
            result.add(ValidationIssue(
                ValidationSeverity.ERROR,
                "INVALID_EDGE_SOURCE",
                f'Edge "{edge.display_id}" references non-existent source node "{edge.source}"',
                edge_id=edge.display_id,
            ))
        if edge.target not in seen:
            result.add(ValidationIssue(
                ValidationSeverity.ERROR,
                "INVALID_EDGE_TARGET",
                f'Edge "{edge.display_id}" references non-existent target node "{edge.target}"',
                edge_id=edge.display_id,
            ))
        if edge.source == edge.target:
            result.add(ValidationIssue(
                ValidationSeverity.ERROR,
                "SELF_LOOP",
                f'Node "{edge.source}" has an edge to itself',
                node_id=edge.source,
                edge_id=edge.display_id,
            ))

    # Rule 4: cycles (self loops are reported above)
    for cycle in detect_cycles(nodes, edges):
        if len(cycle) == 1:
            continue
        result.add(ValidationIssue(
            ValidationSeverity.ERROR,
            "CYCLE_DETECTED",
            f"Cycle detected: {' → '.join(cycle)} → {cycle[0]}. This will cause an infinite loop.",
            node_id=cycle[0],
        ))

    # Rule 5: at least one trigger
    triggers = [n for n in nodes if _is_trigger(n)]
    if nodes and not triggers:
        result.add(ValidationIssue(
            ValidationSeverity.WARN,
            "MISSING_TRIGGER",
            "Workflow has no trigger node (Time Trigger, Webhook, or File Upload)",
        ))

    # Rule 6: disconnected and unreachable nodes
    if len(nodes) > 1:
        connected = {e.source for e in edges} | {e.target for e in edges}
        with_incoming = {e.target for e in edges}
        trigger_ids = {n.id for n in triggers}
        for node in nodes:
            if node.id not in connected:
                result.add(ValidationIssue(
                    ValidationSeverity.WARN,
                    "DISCONNECTED_NODE",
                    f'Node "{node.label}" is not connected to any other nodes',
                    node_id=node.id,
                ))
            elif edges and node.id not in trigger_ids and node.id not in with_incoming:
                result.add(ValidationIssue(
                    ValidationSeverity.WARN,
                    "UNREACHABLE_NODE",
                    f'Node "{node.label}" has no incoming connections',
                    node_id=node.id,
                ))

    # Rule 7: labels
    for node in nodes:
        label = node.data.get("label")
        if not isinstance(label, str) or not label.strip():
            result.add(ValidationIssue(
                ValidationSeverity.INFO,
                "MISSING_NODE_LABEL",
                f'Node "{node.id}" has no label. Consider adding a descriptive label.',
                node_id=node.id,
            ))

    return result


def ensure_valid(definition: WorkflowDefinition) -> ValidationResult:
    """Validate ``definition``; raise GraphInvalidError on any error."""
    result = validate_workflow(definition.nodes, definition.edges)
    if not result.valid:
        first = result.errors[0]
        raise GraphInvalidError(
            first.message,
            code=first.code,
            errors=[i.to_dict() for i in result.errors],
        )
    return result


def format_validation_result(result: ValidationResult) -> str:
    """Format a validation result as human-readable text."""
    lines = ["✓ Workflow validation passed" if result.valid else "✗ Workflow validation failed"]

    for title, issues in (
        ("Errors", result.errors),
        ("Warnings", result.warnings),
        ("Info", result.info),
    ):
        if issues:
            lines.append(f"\n{title} ({len(issues)}):")
            lines.extend(f"  • [{i.code}] {i.message}" for i in issues)

    return "\n".join(lines)

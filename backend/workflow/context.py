"""Per-run execution context: node id -> node output."""

from dataclasses import dataclass, field
from typing import Any, Iterator

from core.exceptions import ContextWriteError


@dataclass
class ExecutionContext:
    """Outputs of completed nodes for one run attempt.

    Created empty when an attempt starts and discarded when it ends. Each
    node id may be written once; only the engine writes, after the node's
    block has succeeded. Blocks read earlier outputs through ``get``.
    """

    execution_id: str
    workflow_id: str
    trigger_data: dict[str, Any] = field(default_factory=dict)
    _outputs: dict[str, Any] = field(default_factory=dict, repr=False)

    def get(self, node_id: str, default: Any = None) -> Any:
        return self._outputs.get(node_id, default)

    def set(self, node_id: str, value: Any) -> None:
        if node_id in self._outputs:
            raise ContextWriteError(node_id)
        self._outputs[node_id] = value

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._outputs

    def __len__(self) -> int:
        return len(self._outputs)

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._outputs))

    def items(self) -> list[tuple[str, Any]]:
        return list(self._outputs.items())

    def as_dict(self) -> dict[str, Any]:
        """Shallow snapshot of all outputs recorded so far."""
        return dict(self._outputs)

    def to_dict(self) -> dict[str, Any]:
        return {
            "execution_id": self.execution_id,
            "workflow_id": self.workflow_id,
            "trigger_data": self.trigger_data,
            "outputs": self.as_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ExecutionContext":
        ctx = cls(
            execution_id=data["execution_id"],
            workflow_id=data["workflow_id"],
            trigger_data=data.get("trigger_data", {}),
        )
        for node_id, value in (data.get("outputs") or {}).items():
            ctx.set(node_id, value)
        return ctx


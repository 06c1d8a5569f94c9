"""Graph submission payload: nodes, edges and the workflow definition."""

import hashlib
import json
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class Node(BaseModel):
    """One block in a workflow graph."""

    model_config = ConfigDict(extra="allow")

    id: str = Field(min_length=1, description="Node id, unique within the graph")
    type: Optional[str] = Field(default=None, description="Block type key")
    data: Dict[str, Any] = Field(default_factory=dict, description="Block configuration")

    @property
    def block_type(self) -> Optional[str]:
        """Raw block type: ``type``, else ``data.blockType``, else ``data.type``."""
        return self.type or self.data.get("blockType") or self.data.get("type")

    @property
    def label(self) -> str:
        label = self.data.get("label")
        return label if isinstance(label, str) and label.strip() else self.id


class Edge(BaseModel):
    """Directed dependency: ``source`` runs before ``target``."""

    model_config = ConfigDict(extra="allow")

    id: Optional[str] = Field(default=None, description="Editor edge id")
    source: str = Field(min_length=1)
    target: str = Field(min_length=1)

    @property
    def display_id(self) -> str:
        return self.id or f"{self.source}->{self.target}"


class WorkflowDefinition(BaseModel):
    """A graph as submitted by the editor: ``{name, nodes, edges}``.

    Hosts that track workflows pass their own ``id``. Without one the id is
    derived from the name and graph, so resubmitting the same payload
    groups its runs under the same workflow.
    """

    id: Optional[str] = Field(default=None, description="Workflow id")
    name: str = Field(default="Untitled workflow")
    nodes: List[Node] = Field(default_factory=list)
    edges: List[Edge] = Field(default_factory=list)

    @model_validator(mode="after")
    def derive_id(self) -> "WorkflowDefinition":
        if not self.id:
            payload = self.model_dump(mode="json", exclude={"id"})
            digest = hashlib.sha256(json.dumps(payload, sort_keys=True).encode()).hexdigest()
            self.id = f"wf-{digest[:16]}"
        return self

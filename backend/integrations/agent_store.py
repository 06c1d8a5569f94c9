"""Agent definitions looked up by the invoke_agent block."""

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncEngine

from db.database import create_session_factory
from db.models import Agent


class AgentDefinition(BaseModel):
    id: str
    name: str
    system_prompt: Optional[str] = Field(default=None, description="Defaults to 'You are {name}.'")
    config: Dict[str, Any] = Field(default_factory=dict)

    @property
    def effective_system_prompt(self) -> str:
        return self.system_prompt or f"You are {self.name}."


class AgentStore(ABC):
    @abstractmethod
    async def get_agent(self, agent_id: str) -> Optional[AgentDefinition]:
        ...


class InMemoryAgentStore(AgentStore):
    def __init__(self, agents: Optional[list[AgentDefinition]] = None):
        self._agents = {a.id: a for a in agents or []}

    def add(self, agent: AgentDefinition) -> None:
        self._agents[agent.id] = agent

    async def get_agent(self, agent_id: str) -> Optional[AgentDefinition]:
        return self._agents.get(str(agent_id))


class SqlAgentStore(AgentStore):
    """Reads the ``agents`` table."""

    def __init__(self, engine: AsyncEngine):
        self._session_factory = create_session_factory(engine)

    async def get_agent(self, agent_id: str) -> Optional[AgentDefinition]:
        async with self._session_factory() as session:
            row = (await session.execute(
                select(Agent).where(Agent.id == str(agent_id))
            )).scalar_one_or_none()
        if row is None:
            return None
        return AgentDefinition(
            id=row.id,
            name=row.name,
            system_prompt=row.system_prompt,
            config=row.config or {},
        )

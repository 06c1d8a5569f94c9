"""Agent model: a named system prompt the invoke_agent block runs."""

from typing import Optional

from sqlalchemy import JSON, Text
from sqlalchemy.orm import Mapped, mapped_column

from db.base import BaseModel


class Agent(BaseModel):
    """Agent definition.

    Attributes:
        id: Unique identifier (UUID string)
        name: Agent name, used in the default system prompt
        system_prompt: Optional system prompt
        config: JSON provider options (model, max_tokens)
    """

    __tablename__ = "agents"

    name: Mapped[str] = mapped_column(nullable=False, index=True)
    system_prompt: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    config: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

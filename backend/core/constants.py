"""Constants and enums for the workflow execution engine."""

from enum import Enum
from typing import Optional


class RunStatus(str, Enum):
    """Workflow execution (run) status."""

    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED)


class NodeStatus(str, Enum):
    """Status of one node attempt in the execution log."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class LogLevel(str, Enum):
    """Level of a run event."""

    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class ValidationSeverity(str, Enum):
    """Severity of a graph validation issue."""

    ERROR = "error"
    WARN = "warn"
    INFO = "info"


class BlockType(str, Enum):
    """Closed set of block kinds the engine knows how to run."""

    TIME_TRIGGER = "time_trigger"
    WEBHOOK_TRIGGER = "webhook_trigger"
    HTTP_REQUEST = "http_request"
    DATABASE_QUERY = "database_query"
    SEND_EMAIL = "send_email"
    SEND_MESSAGE = "send_message"
    INVOKE_AGENT = "invoke_agent"
    RUN_CODE = "run_code"
    CONDITION = "condition"
    TRANSFORM_DATA = "transform_data"
    DELAY = "delay"

    @property
    def is_trigger(self) -> bool:
        return self in (BlockType.TIME_TRIGGER, BlockType.WEBHOOK_TRIGGER)


# Legacy spellings used by graph editors. Canonical values, their
# camelCase and kebab-case forms are derived in normalize_block_type.
BLOCK_TYPE_ALIASES: dict[str, BlockType] = {
    "file-upload-trigger": BlockType.TIME_TRIGGER,
    "database-action": BlockType.DATABASE_QUERY,
    "email-action": BlockType.SEND_EMAIL,
    "ai-action": BlockType.INVOKE_AGENT,
    "code-action": BlockType.RUN_CODE,
    "chat-action": BlockType.SEND_MESSAGE,
}


def _camel_to_snake(name: str) -> str:
    out = []
    for i, ch in enumerate(name):
        if ch.isupper() and i > 0:
            out.append("_")
        out.append(ch.lower())
    return "".join(out)


def normalize_block_type(raw: Optional[str]) -> Optional[BlockType]:
    """Map an editor block-type spelling onto its BlockType, or None.

    ``timeTrigger``, ``time_trigger`` and ``time-trigger`` all resolve to
    ``BlockType.TIME_TRIGGER``.
    """
    if not raw or not isinstance(raw, str):
        return None
    key = raw.strip()
    if key in BLOCK_TYPE_ALIASES:
        return BLOCK_TYPE_ALIASES[key]
    snake = _camel_to_snake(key).replace("-", "_")
    try:
        return BlockType(snake)
    except ValueError:
        return None

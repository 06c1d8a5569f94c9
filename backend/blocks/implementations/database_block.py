"""Database Query block: read-only SELECT statements against the host store."""

import re
from typing import Any, Dict

import structlog
from sqlalchemy import text
from sqlalchemy.exc import DBAPIError, SQLAlchemyError

from blocks.base_block import BaseBlock
from core.constants import BlockType
from core.exceptions import ExecutionError, PolicyViolation, TransientInfraError
from workflow.context import ExecutionContext
from workflow.models import Node

logger = structlog.get_logger(__name__)

ALLOWED_SQL_PATTERN = re.compile(r"^\s*SELECT\s", re.IGNORECASE)
FORBIDDEN_SQL_PATTERNS = [
    re.compile(r";\s*(DROP|DELETE|UPDATE|INSERT|ALTER|CREATE|TRUNCATE|EXEC|GRANT|REVOKE)", re.IGNORECASE),
    re.compile(r"--"),
    re.compile(r"/\*"),
    re.compile(r"\bUNION\b", re.IGNORECASE),
    re.compile(r"\bINTO\s+OUTFILE\b", re.IGNORECASE),
    re.compile(r"\bLOAD_FILE\b", re.IGNORECASE),
]


def check_query_policy(query: str) -> None:
    """Raise PolicyViolation unless ``query`` is a plain SELECT."""
    if not ALLOWED_SQL_PATTERN.match(query):
        raise PolicyViolation("Database Query: Only SELECT queries are allowed")
    for pattern in FORBIDDEN_SQL_PATTERNS:
        if pattern.search(query):
            raise PolicyViolation("Database Query: Query contains forbidden patterns")
    # A trailing semicolon is fine, a second statement is not
    if ";" in query.strip().rstrip(";"):
        raise PolicyViolation("Database Query: Multiple statements are not allowed")


class DatabaseQueryBlock(BaseBlock):
    """Run a parameterized SELECT.

    Config:
        query: SQL SELECT statement with ``:name`` placeholders (required)
        params: Mapping of placeholder values
        limit: Max rows to return (capped by DB_QUERY_ROW_LIMIT)
    """

    block_type = BlockType.DATABASE_QUERY
    display_name = "Database Query"
    description = "Read rows from the database"

    async def execute(self, node: Node, context: ExecutionContext) -> Dict[str, Any]:
        query = self.require(node, "query", "Database Query: SQL query is required")
        if not isinstance(query, str):
            raise ExecutionError("Database Query: query must be a string")
        check_query_policy(query)

        params = node.data.get("params") or {}
        if not isinstance(params, dict):
            raise ExecutionError("Database Query: params must be a mapping of named values")

        engine = self.services.db_engine
        if engine is None:
            raise ExecutionError("Database not available", "DATABASE_UNAVAILABLE")

        row_limit = self.settings.DB_QUERY_ROW_LIMIT
        if node.data.get("limit"):
            row_limit = min(int(node.data["limit"]), row_limit)

        try:
            async with engine.connect() as conn:
                result = await conn.execute(text(query.strip().rstrip(";")), params)
                rows = result.mappings().fetchmany(row_limit + 1)
        except DBAPIError as e:
            if e.connection_invalidated:
                raise TransientInfraError(f"Database query failed: {e.orig}")
            raise ExecutionError(f"Database query failed: {e.orig}")
        except SQLAlchemyError as e:
            raise ExecutionError(f"Database query failed: {e}")

        truncated = len(rows) > row_limit
        rows = [dict(r) for r in rows[:row_limit]]
        logger.debug("Query returned rows", row_count=len(rows), truncated=truncated)

        return {
            "row_count": len(rows),
            "rows": rows,
            "truncated": truncated,
        }

    @classmethod
    def get_config_schema(cls) -> Dict[str, Any]:
        return {
            "type": "object",
            "required": ["query"],
            "properties": {
                "query": {"type": "string"},
                "params": {"type": "object"},
                "limit": {"type": "integer", "minimum": 1},
            },
        }

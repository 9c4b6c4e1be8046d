"""
Tool dispatch registry.

Maps a tool name to its handler and executes assembled tool calls.  The
registry is populated at process start and then frozen; after that it is
shared read-only between concurrent orchestrators, so it needs no locking.

``dispatch`` never raises: unknown tools, unparseable or schema-invalid
arguments, handler exceptions and handler timeouts are all converted into an
error ``ToolResult``.
"""

from __future__ import annotations

import asyncio
import logging

import jsonschema

from chatrelay.errors import ToolArgumentParseError, ToolExecutionError
from chatrelay.llm.types import ToolCallRecord
from chatrelay.tools.base import Tool, normalize_schema
from chatrelay.types import ErrorCode, ToolResult

logger = logging.getLogger(__name__)

TOOL_NOT_FOUND_MESSAGE = "The requested tool is not available."


class ToolRegistry:
    def __init__(self, tool_timeout: float | None = 30.0) -> None:
        self._tools: dict[str, Tool] = {}
        self._frozen = False
        self.tool_timeout = tool_timeout

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(self, tool: Tool) -> None:
        """Add *tool*.  Re-registering a name replaces the previous handler."""
        if self._frozen:
            raise RuntimeError(
                f"Cannot register {tool.name!r}: tool registry is frozen"
            )
        if tool.name in self._tools:
            logger.debug("Replacing registered tool %s", tool.name)
        self._tools[tool.name] = tool

    def freeze(self) -> None:
        """Disallow further registration."""
        self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def list(self) -> list[Tool]:
        return sorted(self._tools.values(), key=lambda t: t.name)

    def to_openai_schema(self) -> list[dict]:
        return [t.to_openai_schema() for t in self.list()]

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def dispatch(self, record: ToolCallRecord) -> ToolResult:
        """
        Execute one assembled tool call.

        Steps:
        1. Registry lookup
        2. Parse arguments
        3. Validate against the tool's JSON schema
        4. Execute with timeout
        """
        # 1. Registry lookup
        tool = self.get(record.name)
        if tool is None:
            logger.warning("Tool not found: %s", record.name)
            return ToolResult.fail(TOOL_NOT_FOUND_MESSAGE, ErrorCode.UNKNOWN_TOOL)

        # 2. Parse arguments
        try:
            arguments = self._parse_arguments(record)
        except ToolArgumentParseError as e:
            logger.warning("Invalid arguments for %s: %s", record.name, e)
            return ToolResult.fail(
                f"Invalid arguments for {record.name}: {e}",
                ErrorCode.ARGUMENT_PARSE_ERROR,
            )

        # 3. Validate
        error = self._validate(tool, arguments)
        if error is not None:
            logger.warning("Schema validation failed for %s: %s", record.name, error)
            return ToolResult.fail(
                f"Invalid arguments for {record.name}: {error}",
                ErrorCode.VALIDATION_ERROR,
            )

        # 4. Execute
        logger.info("Calling %s (call_id=%s)", record.name, record.id)
        try:
            return await self._execute(tool, arguments)
        except asyncio.TimeoutError:
            logger.error("Tool %s timed out after %ss", record.name, self.tool_timeout)
            return ToolResult.fail(
                f"{record.name} timed out after {self.tool_timeout}s",
                ErrorCode.TIMEOUT,
            )
        except ToolExecutionError as e:
            logger.error("Tool %s failed: %s", record.name, e)
            return ToolResult.fail(str(e), ErrorCode.TOOL_EXCEPTION)
        except Exception as e:
            logger.exception("Tool %s raised", record.name)
            return ToolResult.fail(
                f"Error calling {record.name}: {e}",
                ErrorCode.TOOL_EXCEPTION,
            )

    @staticmethod
    def _parse_arguments(record: ToolCallRecord) -> dict:
        if not record.valid:
            raise ToolArgumentParseError(record.error or "invalid arguments")
        try:
            return record.parsed_arguments()
        except ValueError as e:
            raise ToolArgumentParseError(str(e)) from e

    @staticmethod
    def _validate(tool: Tool, arguments: dict) -> str | None:
        try:
            jsonschema.validate(
                instance=arguments,
                schema=normalize_schema(tool.parameters),
            )
        except jsonschema.ValidationError as e:
            return str(e.message)
        except jsonschema.SchemaError as e:
            return f"tool schema is invalid: {e.message}"
        return None

    async def _execute(self, tool: Tool, arguments: dict) -> ToolResult:
        if self.tool_timeout:
            return await asyncio.wait_for(
                tool.execute(arguments), timeout=self.tool_timeout
            )
        return await tool.execute(arguments)

from __future__ import annotations

import inspect
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Union

from chatrelay.types import ToolResult


ToolHandler = Callable[[dict], Union[ToolResult, Awaitable[ToolResult]]]


def normalize_schema(schema: dict) -> dict:
    s = dict(schema or {})
    s.setdefault("type", "object")
    s.setdefault("properties", {})
    return s


class Tool(ABC):
    @property
    @abstractmethod
    def name(self) -> str: ...

    @property
    @abstractmethod
    def description(self) -> str: ...

    @property
    @abstractmethod
    def parameters(self) -> dict: ...

    @abstractmethod
    async def execute(self, arguments: dict) -> ToolResult: ...

    def confirmation(self, arguments: dict, result: ToolResult) -> str:
        """Short human-readable fragment relayed when the call succeeds."""
        if result.user_message:
            return f"\n\n{result.user_message}\n\n"
        return f"\n\n`{self.name}` completed.\n\n"

    def to_openai_schema(self) -> dict:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": normalize_schema(self.parameters),
            },
        }


class ToolDefinition(Tool):
    """
    Static registration of a plain handler function.

    The handler receives the parsed argument object and returns a
    ``ToolResult``; it may be a coroutine function.
    """

    def __init__(
        self,
        name: str,
        description: str,
        parameter_schema: dict,
        handler: ToolHandler,
        confirmation: Callable[[dict, ToolResult], str] | None = None,
    ) -> None:
        self._name = name
        self._description = description
        self._schema = parameter_schema
        self.handler = handler
        self._confirmation = confirmation

    @property
    def name(self) -> str:
        return self._name

    @property
    def description(self) -> str:
        return self._description

    @property
    def parameters(self) -> dict:
        return self._schema

    async def execute(self, arguments: dict) -> ToolResult:
        result: Any = self.handler(arguments)
        if inspect.isawaitable(result):
            result = await result
        if not isinstance(result, ToolResult):
            raise TypeError(
                f"Tool {self._name} returned {type(result).__name__}, expected ToolResult"
            )
        return result

    def confirmation(self, arguments: dict, result: ToolResult) -> str:
        if self._confirmation is not None:
            return self._confirmation(arguments, result)
        return super().confirmation(arguments, result)

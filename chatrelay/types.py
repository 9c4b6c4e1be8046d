from dataclasses import dataclass
from typing import Any


STATUS_SUCCESS = "success"
STATUS_ERROR = "error"


@dataclass
class ToolResult:
    status: str
    payload: Any = None
    user_message: str = ""
    error_code: str | None = None

    @property
    def success(self) -> bool:
        return self.status == STATUS_SUCCESS

    @classmethod
    def ok(cls, payload: Any = None, user_message: str = "") -> "ToolResult":
        return cls(status=STATUS_SUCCESS, payload=payload, user_message=user_message)

    @classmethod
    def fail(
        cls,
        user_message: str,
        error_code: str,
        payload: Any = None,
    ) -> "ToolResult":
        if payload is None:
            payload = {"status": STATUS_ERROR, "message": user_message}
        return cls(
            status=STATUS_ERROR,
            payload=payload,
            user_message=user_message,
            error_code=error_code,
        )


class ErrorCode:
    UNKNOWN_TOOL = "unknown_tool"
    ARGUMENT_PARSE_ERROR = "argument_parse_error"
    VALIDATION_ERROR = "validation_error"
    TOOL_EXCEPTION = "tool_exception"
    TIMEOUT = "timeout"

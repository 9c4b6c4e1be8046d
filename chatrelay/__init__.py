"""chatrelay -- streaming chat relay with tool calls."""

__version__ = "0.1.0"

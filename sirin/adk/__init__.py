"""Agent runtime: agent interface, execution context, tool registry and runner."""

__all__ = ["agent", "context", "runner", "tool"]
"""RouterOS fleet upgrade manager."""

__version__ = "0.1.0"

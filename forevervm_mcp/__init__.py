"""MCP server for running Python on foreverVM REPLs."""

__version__ = "1.0.0"

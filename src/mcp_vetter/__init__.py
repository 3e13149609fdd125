"""Diagnostic client that connects to MCP servers and vets their tool surface."""

__version__ = "0.3.0"

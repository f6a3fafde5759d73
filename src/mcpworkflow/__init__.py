"""mcpworkflow: launch, watch and stop local MCP servers as named workflows."""

__version__ = "1.0.0"

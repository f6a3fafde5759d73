"""Exceptions raised by mcpworkflow."""


class MCPWorkflowError(Exception):
    """Base exception for mcpworkflow operations."""

    pass


class ConfigError(MCPWorkflowError):
    """Raised when a config or settings file is missing, unreadable or invalid."""

    pass


class UnknownServerError(ConfigError):
    """Raised when a server name is not in the master config."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f'Server "{name}" not found in configuration')


class UnknownWorkflowError(ConfigError):
    """Raised when a workflow key is not in the master config."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f'Workflow "{name}" not found in configuration')


class BackupError(MCPWorkflowError):
    """Raised when a backup cannot be created."""

    pass

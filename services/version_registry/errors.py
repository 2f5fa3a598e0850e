from typing import Optional


class VersionRegistryError(RuntimeError):
    code = "VERSION_REGISTRY_ERROR"


class PersistenceError(VersionRegistryError):
    code = "PERSISTENCE_ERROR"

    def __init__(self, message: str, *, path: Optional[str] = None) -> None:
        super().__init__(message)
        self.path = path


class StaleWriteError(PersistenceError):
    code = "STALE_WRITE"


class FetchError(VersionRegistryError):
    code = "FETCH_ERROR"

    def __init__(self, message: str, *, tool_id: str) -> None:
        super().__init__(message)
        self.tool_id = tool_id


class ToolNotFoundError(VersionRegistryError):
    code = "NOT_FOUND"

    def __init__(self, tool_id: str) -> None:
        super().__init__(f"Tool not found: {tool_id}")
        self.tool_id = tool_id


class ConfigError(VersionRegistryError, ValueError):
    code = "CONFIG_ERROR"

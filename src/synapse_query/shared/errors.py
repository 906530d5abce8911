"""
Shared Errors - Exception taxonomy for the orchestration engine.

Controllers catch these only at task and page execution boundaries and
turn them into error state; nothing here is retried by the engine itself.
"""
from typing import Any, Dict, Optional


class SynapseQueryError(Exception):
    """Base class for all engine errors."""

    error_code = "synapse_query_error"

    def __init__(self, detail: str = "", error_code: Optional[str] = None):
        super().__init__(detail)
        self.detail = detail
        if error_code:
            self.error_code = error_code

    def to_dict(self) -> Dict[str, Any]:
        """Convert the error to a dictionary for logging and snapshots."""
        return {
            "error": self.error_code,
            "detail": self.detail,
            "type": type(self).__name__,
        }


class TransportError(SynapseQueryError):
    """Connection-level failure surfaced by a transport."""

    error_code = "transport_error"


class CancellationError(SynapseQueryError):
    """The cancellation token for an operation fired."""

    error_code = "aborted"

    def __init__(self, detail: str = "Aborted", error_code: Optional[str] = None):
        super().__init__(detail, error_code)


class ApplicationError(SynapseQueryError):
    """A well-formed non-success response."""

    error_code = "application_error"

    def __init__(self, status: int, payload: Any = None, detail: str = ""):
        super().__init__(detail or f"Request failed with status {status}")
        self.status = status
        self.payload = payload

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update({"status": self.status, "payload": self.payload})
        return data


class PluginError(SynapseQueryError):
    """An exception raised inside plugin code."""

    error_code = "plugin_error"

    def __init__(self, plugin_name: str, original_error: BaseException):
        super().__init__(f"Plugin '{plugin_name}' failed: {original_error}")
        self.plugin_name = plugin_name
        self.original_error = original_error

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["plugin"] = self.plugin_name
        return data


class PluginDependencyError(SynapseQueryError):
    """A plugin depends on another plugin that is not registered."""

    error_code = "plugin_dependency_error"

    def __init__(self, plugin_name: str, dependency: str):
        super().__init__(
            f'Plugin "{plugin_name}" depends on "{dependency}" which is not registered'
        )
        self.plugin_name = plugin_name
        self.dependency = dependency

"""
Storage connection base class.
"""

from typing import Any


class BaseStorageConnection:
    """
    Base class for object storage connections.

    Storage connections list, fetch, copy and delete objects in one source
    bucket/container. Subclasses implement the store-specific calls.
    """

    def __init__(self, name: str, config: dict[str, Any]):
        """
        Initialize storage connection.

        Args:
            name: Connection name (for logs)
            config: Connection configuration dictionary
        """
        self.name = name
        self.config = config

    @property
    def _cfg(self) -> dict[str, Any]:
        """Get nested config dict."""
        return self.config.get("config", {})

    def __repr__(self) -> str:
        """String representation."""
        return f"{self.__class__.__name__}(name='{self.name}')"

"""
BaseConnector — Abstract base class for remote integration blocks.

A connector owns the lifecycle of one external client (HTTP pool, auth)
so the trade lifecycle can ask for ``connector.client`` without caring
how it was built or when it must be closed.

Usage:
    class MyConnector(BaseConnector):
        name = "my_service"
        icon = "🔌"
        description = "Connects to My Service API"

        async def setup(self) -> None:
            self._client = MyServiceClient()

        async def health_check(self) -> bool:
            return await self._client.ping()
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from pydantic import BaseModel


class ConnectorInfo(BaseModel):
    """Summary info for a connector, printed by the CLI ``health`` command."""

    name: str
    icon: str
    description: str
    healthy: bool = True


class BaseConnector(ABC):
    """
    Abstract base class for integration connectors.

    Subclasses MUST define:
      - name: str — Unique identifier (e.g. "platform")
      - icon: str — Emoji for display
      - description: str — What this connector does

    Subclasses MAY override:
      - setup(): One-time initialization (auth, client creation)
      - teardown(): Cleanup (close connections)
      - health_check(): Verify the connection is alive
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique connector identifier."""
        ...

    @property
    @abstractmethod
    def icon(self) -> str:
        """Emoji icon for display."""
        ...

    @property
    @abstractmethod
    def description(self) -> str:
        """Human-readable description of what this connector does."""
        ...

    # ── Lifecycle Hooks ──────────────────────────────────────────────

    async def setup(self) -> None:
        """Called once before first use. Override for initialization."""
        pass

    async def teardown(self) -> None:
        """Called on shutdown. Override for cleanup."""
        pass

    async def health_check(self) -> bool:
        """Check if the connector is healthy and ready to use."""
        return True

    # ── Info ──────────────────────────────────────────────────────────

    async def get_info(self) -> ConnectorInfo:
        """Return summary info, including a live health check."""
        return ConnectorInfo(
            name=self.name,
            icon=self.icon,
            description=self.description,
            healthy=await self.health_check(),
        )

    async def __aenter__(self) -> "BaseConnector":
        await self.setup()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.teardown()

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} name={self.name!r}>"

"""
Connectors — Integration blocks for external services.

Usage:
    from signaldesk.connectors import PlatformConnector

    async with PlatformConnector() as platform:
        wallet = await platform.client.get_wallet_snapshot()
"""

from signaldesk.connectors.base_connector import BaseConnector, ConnectorInfo
from signaldesk.connectors.platform_connector import (
    AsyncPlatformClient,
    PlatformConnector,
)

__all__ = [
    "BaseConnector",
    "ConnectorInfo",
    "AsyncPlatformClient",
    "PlatformConnector",
]

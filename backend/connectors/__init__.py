"""ClickUp connector package."""
from connectors.base import BaseConnector
from connectors.clickup import ClickUpConnector
from connectors.clickup_client import ClickUpClient

__all__ = [
    "BaseConnector",
    "ClickUpClient",
    "ClickUpConnector",
]

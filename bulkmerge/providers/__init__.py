"""Git hosting provider gateways."""

from .base import BaseProvider, HTTPProvider, ProviderType, RemoteState
from .mock import MockCall, MockProvider
from .registry import ProviderRegistry

__all__ = [
    "BaseProvider",
    "HTTPProvider",
    "MockCall",
    "MockProvider",
    "ProviderRegistry",
    "ProviderType",
    "RemoteState",
]

"""Split provider clients."""

from ..config import Settings
from .base import Credentials, ProviderRegistry, SplitProvider
from .splitwise import SplitwiseProvider
from .splitwise_oauth import SplitwiseOAuth


def build_registry(settings: Settings) -> ProviderRegistry:
    """Build the registry of every provider this installation supports."""
    return ProviderRegistry([SplitwiseProvider.from_settings(settings)])


__all__ = [
    "Credentials",
    "ProviderRegistry",
    "SplitProvider",
    "SplitwiseOAuth",
    "SplitwiseProvider",
    "build_registry",
]

"""External provider clients (generation and publishing)."""

from .generation import GenerationProvider, RunwayGenerationClient
from .publishing import InstagramGraphClient, PublishPlatform

__all__ = [
    "GenerationProvider",
    "RunwayGenerationClient",
    "PublishPlatform",
    "InstagramGraphClient",
]

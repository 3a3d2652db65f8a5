"""Job handlers for the generation and publish queues."""

from .generation import GenerationHandler
from .publish import PublishHandler, compose_caption

__all__ = ["GenerationHandler", "PublishHandler", "compose_caption"]

"""Model transports: factory picks the implementation from config."""

from __future__ import annotations

from tether.core.config.schema import TransportConfig
from tether.core.transport.base import (
    BaseTransport,
    ChatResponse,
    StreamAccumulator,
    StreamChunk,
    ToolCallDelta,
)
from tether.core.transport.http import HttpTransport
from tether.core.transport.retry import RetryPolicy

__all__ = [
    "BaseTransport",
    "ChatResponse",
    "HttpTransport",
    "RetryPolicy",
    "StreamAccumulator",
    "StreamChunk",
    "ToolCallDelta",
    "make_transport",
]


def make_transport(config: TransportConfig) -> BaseTransport:
    """Build the transport named by ``config.provider``."""
    if config.provider == "litellm":
        from tether.core.transport.litellm import LiteLLMTransport

        return LiteLLMTransport.from_config(config)
    return HttpTransport.from_config(config)

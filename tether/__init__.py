"""tether: client-embedded agent orchestration engine."""

__version__ = "0.1.0"

from tether.agent.agent import Agent
from tether.agent.coordinator import AgentCoordinator
from tether.agent.state import AgentStep
from tether.agent.tools import ConfirmationPolicy, ToolDescriptor, ToolRegistry
from tether.core.cancellation import CancellationToken
from tether.core.config import Settings, load_config
from tether.core.errors import (
    AgentBusyError,
    CancellationError,
    IterationLimitExceeded,
    PersistenceError,
    RateLimitError,
    TetherError,
    TransportError,
)
from tether.core.transport import HttpTransport, RetryPolicy, make_transport
from tether.memory.manager import MemoryManager
from tether.memory.models import AgentResponse, AgentResult, Checkpoint, Message, TokenUsage, ToolCall
from tether.memory.persistence import InMemoryPersistence, Persistence
from tether.memory.store import SQLiteStore

__all__ = [
    "Agent",
    "AgentBusyError",
    "AgentCoordinator",
    "AgentResponse",
    "AgentResult",
    "AgentStep",
    "CancellationError",
    "CancellationToken",
    "Checkpoint",
    "ConfirmationPolicy",
    "HttpTransport",
    "InMemoryPersistence",
    "IterationLimitExceeded",
    "MemoryManager",
    "Message",
    "Persistence",
    "PersistenceError",
    "RateLimitError",
    "RetryPolicy",
    "SQLiteStore",
    "Settings",
    "TetherError",
    "TokenUsage",
    "ToolCall",
    "ToolDescriptor",
    "ToolRegistry",
    "TransportError",
    "load_config",
    "make_transport",
]

"""Baton engine: prompt decisions, permission gating and streamed turns."""
from .models import (
    ContinuityMode,
    ConversationSession,
    Decision,
    PermissionMode,
    Prompt,
    PromptOption,
    PromptStatus,
    PromptType,
    Resolution,
    RiskLevel,
)
from .config import BridgeConfig
from .errors import (
    BridgeError,
    ConfigError,
    InvalidPromptError,
    InvalidRequestError,
    PermissionCancelledError,
    PromptStoreError,
    RequestConflictError,
    RequestNotFoundError,
    RuntimeStreamError,
    TransportError,
)

__all__ = [
    # Models
    "ContinuityMode",
    "ConversationSession",
    "Decision",
    "PermissionMode",
    "Prompt",
    "PromptOption",
    "PromptStatus",
    "PromptType",
    "Resolution",
    "RiskLevel",
    # Config
    "BridgeConfig",
    # Errors
    "BridgeError",
    "ConfigError",
    "InvalidPromptError",
    "InvalidRequestError",
    "PermissionCancelledError",
    "PromptStoreError",
    "RequestConflictError",
    "RequestNotFoundError",
    "RuntimeStreamError",
    "TransportError",
]

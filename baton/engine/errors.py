"""Exception hierarchy for the bridge engine.

Specific exceptions for each failure mode. Best-effort bookkeeping
catches narrow errors and logs them; everything here propagates.
"""
from __future__ import annotations


class BridgeError(Exception):
    """Base exception for all bridge errors."""


class ConfigError(BridgeError):
    """Configuration could not be loaded or failed validation."""
    def __init__(self, problems: list[str] | str):
        if isinstance(problems, str):
            problems = [problems]
        self.problems = problems
        super().__init__("Invalid configuration: " + "; ".join(problems))


class PromptStoreError(BridgeError):
    """A prompt record could not be persisted before deciding."""
    def __init__(self, prompt_id: str, reason: str):
        self.prompt_id = prompt_id
        self.reason = reason
        super().__init__(f"Failed to store prompt {prompt_id}: {reason}")


class InvalidPromptError(BridgeError):
    """Prompt construction or a response referenced invalid options."""
    def __init__(self, reason: str, prompt_id: str | None = None):
        self.reason = reason
        self.prompt_id = prompt_id
        if prompt_id:
            super().__init__(f"Invalid prompt {prompt_id}: {reason}")
        else:
            super().__init__(f"Invalid prompt: {reason}")


class PermissionCancelledError(BridgeError):
    """A pending human decision was released because its request aborted."""
    def __init__(self, request_id: str | None, prompt_id: str):
        self.request_id = request_id
        self.prompt_id = prompt_id
        super().__init__(
            f"Permission wait for prompt {prompt_id} cancelled "
            f"(request {request_id})"
        )


class RequestNotFoundError(BridgeError):
    """No active request is registered under the given id."""
    def __init__(self, request_id: str):
        self.request_id = request_id
        super().__init__(f"No active request {request_id}")


class RequestConflictError(BridgeError):
    """A request with the same id is already running."""
    def __init__(self, request_id: str):
        self.request_id = request_id
        super().__init__(f"Request {request_id} is already running")


class RuntimeStreamError(BridgeError):
    """The assistant runtime failed while streaming a turn."""
    def __init__(self, message: str, request_id: str | None = None):
        self.request_id = request_id
        super().__init__(message)


class TransportError(BridgeError):
    """The pub/sub transport is not connected or rejected a frame."""


class InvalidRequestError(BridgeError):
    """An inbound client event was missing required fields."""
    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Invalid request: {reason}")

"""Exception hierarchy shared by the round engine and the LLM helpers."""

from __future__ import annotations

__all__ = [
    "ExternalCallFailed",
    "GenerationDisabled",
    "GenerationInProgress",
    "LlmError",
    "MalformedResponse",
    "RateLimitExceeded",
    "RiddleError",
    "RoundAlreadyActive",
]


class RiddleError(Exception):
    """Base class for every error raised by the riddle engine."""

    code = "riddle_error"

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        if code is not None:
            self.code = code


class RoundAlreadyActive(RiddleError):
    """A round is running (or won and not yet reset) so a new one cannot start."""

    code = "round_active"


class GenerationInProgress(RoundAlreadyActive):
    """Another request is already preparing the next riddle."""

    code = "generation_in_progress"


class GenerationDisabled(RiddleError):
    """Riddle generation via the language model is switched off or unconfigured."""

    code = "generation_disabled"


class LlmError(RiddleError):
    """Failure while talking to the language model service."""

    code = "llm_error"


class MalformedResponse(LlmError):
    code = "malformed_response"


class RateLimitExceeded(LlmError):
    code = "rate_limited"


class ExternalCallFailed(LlmError):
    code = "external_call_failed"

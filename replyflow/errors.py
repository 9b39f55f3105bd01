from typing import Optional


class PipelineError(Exception):
    """Base class for errors raised by pipeline stages."""


class ConfigurationError(PipelineError):
    """Raised when a required setting is missing; fatal for the whole request."""


class UpstreamError(PipelineError):
    """Raised when the model service fails after bounded retries."""

    def __init__(self, reason: str, *, status_code: Optional[int] = None):
        super().__init__(reason)
        self.reason = reason
        self.status_code = status_code


class ModelOutputError(PipelineError):
    """Raised when model output does not decode into the expected schema."""


class MailSendError(PipelineError):
    """Raised when the outbound mail provider rejects a send."""


class MessageNotFound(PipelineError):
    """Raised when a review action targets a message the caller cannot see."""


class InvalidTransition(PipelineError):
    """Raised when a review action does not apply to the message's current status."""


class PromptNotFound(PipelineError):
    """Raised when a prompt key and version have no stored row."""

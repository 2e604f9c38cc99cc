from typing import List, Optional


class ResearchPipelineError(Exception):
    """Base class for every error raised by the research pipeline."""


class InvalidConfigError(ResearchPipelineError):
    """Settings or batch parameters outside their allowed range."""


class InputValidationError(ResearchPipelineError):
    """An uploaded file or mapping is unusable; nothing was created."""


class MalformedInputError(InputValidationError):
    pass


class EmptyInputError(InputValidationError):
    pass


class UnmappedFieldError(InputValidationError):
    def __init__(self, fields: List[str]):
        self.fields = fields
        super().__init__(f"Required fields are not mapped: {', '.join(fields)}")


class DispatchError(ResearchPipelineError):
    """A webhook attempt failed."""

    retryable = False

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class WebhookTimeoutError(DispatchError):
    retryable = True


class WebhookServerError(DispatchError):
    retryable = True


class WebhookClientError(DispatchError):
    pass


class UnknownShapeError(ResearchPipelineError):
    """A research payload matched none of the known response shapes."""


class ProspectNotFoundError(ResearchPipelineError):
    pass


class NotRetryableError(ResearchPipelineError):
    pass

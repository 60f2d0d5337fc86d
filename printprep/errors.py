"""Error taxonomy for the print preparation pipeline."""


class ProcessingError(Exception):
    """Base class for failures raised by a pipeline stage."""

    remediation = "Please try again. If the problem persists, contact support."

    def __init__(self, message: str, stage: str | None = None,
                 remediation: str | None = None):
        super().__init__(message)
        self.stage = stage
        if remediation is not None:
            self.remediation = remediation

    def with_stage(self, stage: str) -> "ProcessingError":
        """Tag the error with the stage it escaped from (first tag wins)."""
        if self.stage is None:
            self.stage = stage
        return self

    def user_message(self) -> str:
        """Combine the failing step with category specific guidance."""
        step = self.stage or "processing"
        return f"{step} failed: {self} {self.remediation}".strip()


class InvalidParametersError(ProcessingError):
    remediation = "Check the requested dimensions, bleed, DPI and cut line type."


class SourceConversionError(ProcessingError):
    remediation = (
        "The file could not be converted to an image. "
        "Please convert it to PNG or JPG and upload it again."
    )


class OutOfMemoryError(ProcessingError):
    remediation = "Reduce the final dimensions or choose 150 DPI."


class AIProviderError(ProcessingError):
    """A fill provider failed. Never fatal; the fallback fill covers it."""

    remediation = "The bleed was filled with the standard edge fill instead."

    def __init__(self, message: str, provider: str | None = None, **kwargs):
        super().__init__(message, **kwargs)
        self.provider = provider


class AIProviderTimeout(AIProviderError):
    remediation = (
        "The AI service did not answer in time; "
        "the bleed was filled with the standard edge fill instead."
    )


class ExportError(ProcessingError):
    remediation = (
        "The generated document appears to be empty or corrupted. "
        "Try again, or export at 150 DPI."
    )

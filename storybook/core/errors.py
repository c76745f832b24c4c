class StorybookError(Exception):
    """Base class for errors raised by the illustration pipeline."""


class PrerequisiteMissingError(StorybookError):
    """A required artifact (outline, manuscript, original image) does not exist yet."""

    def __init__(self, artifact: str, detail: str = ""):
        self.artifact = artifact
        message = f"Cannot proceed: {artifact} not found"
        if detail:
            message += f" ({detail})"
        super().__init__(message)


class PageNotFoundError(StorybookError):
    def __init__(self, page_number: int):
        self.page_number = page_number
        super().__init__(f"Page {page_number} not found in manuscript")


class ProjectNotFoundError(StorybookError):
    def __init__(self, project_id: str):
        self.project_id = project_id
        super().__init__(f"Project {project_id} not found")


class ImageGenerationError(StorybookError):
    """The image provider answered without an image."""


class MalformedResponseError(StorybookError):
    """Structured text output could not be parsed as JSON."""

    PREVIEW_CHARS = 500

    def __init__(self, raw_text: str, cause: Exception = None):
        self.raw_text = raw_text
        preview = raw_text[:self.PREVIEW_CHARS]
        super().__init__(f"Failed to parse JSON response: {cause}. Response was: {preview}")


class GenerationInProgressError(StorybookError):
    def __init__(self, project_id: str):
        self.project_id = project_id
        super().__init__(f"Illustration generation already running for project {project_id}")


class StreamError(StorybookError):
    """The progress stream ended with an error or without a result."""

"""
Error taxonomy shared by every operator.

Handlers map these onto HTTP status codes and the CLI maps them onto exit
codes, so each class carries a stable machine-readable ``code``.
"""

from uuid import UUID


class EditorError(Exception):
    """Base exception for edit log, render, content store and GC operations."""

    code = "internal_error"


class ValidationError(EditorError):
    """Malformed input. Never retried."""

    code = "validation_error"


class NotFoundError(EditorError):
    code = "not_found"

    def __init__(self, kind: str, identifier: UUID | str | None = None):
        self.kind = kind
        self.identifier = identifier
        if identifier is not None:
            super().__init__(f"{kind} not found: {identifier}")
        else:
            super().__init__(f"{kind} not found")


class ProjectNotFoundError(NotFoundError):
    def __init__(self, project_id: UUID | str):
        self.project_id = project_id
        super().__init__("Project", project_id)


class AssetNotFoundError(NotFoundError):
    def __init__(self, asset_id: UUID | str):
        self.asset_id = asset_id
        super().__init__("Source asset", asset_id)


class ExportNotFoundError(NotFoundError):
    def __init__(self, export_id: UUID | str):
        self.export_id = export_id
        super().__init__("Export version", export_id)


class RenderJobNotFoundError(NotFoundError):
    def __init__(self, job_id: UUID | str):
        self.job_id = job_id
        super().__init__("Render job", job_id)


class ConflictError(EditorError):
    """
    Raised when the edit log loses a version race more times than allowed.

    This is transient contention, not a caller mistake.
    """

    code = "conflict"

    def __init__(self, project_id: UUID, attempts: int):
        self.project_id = project_id
        self.attempts = attempts
        super().__init__(
            f"Version conflict on project {project_id} after {attempts} attempts. "
            f"Please retry."
        )


class TranscodingFailure(EditorError):
    """The external transcoding engine failed or crashed."""

    code = "transcoding_failure"

    def __init__(self, message: str, exit_code: int | None = None, stderr: str | None = None):
        self.exit_code = exit_code
        self.stderr = stderr
        super().__init__(message)


class StateError(EditorError):
    """The target is not in a state that allows the requested transition."""

    code = "state_error"

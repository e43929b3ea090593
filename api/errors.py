"""
Error taxonomy for the survey studio backend.

None of these conditions is process-fatal. Store errors leave drafts in
the session cache; image resolution errors are confined to the question
that raised them; malformed cache entries are dropped on load.
"""


class SurveyStudioError(Exception):
    """Base class for all backend errors."""


class StoreError(SurveyStudioError):
    """A Document Store operation did not complete."""


class StoreUnavailable(StoreError):
    """Network failure, timeout or rejected write on the Document Store."""


class DocumentNotFound(StoreError):
    """No document is stored under the requested project id."""

    def __init__(self, project_id: str):
        super().__init__(f"Project not found: {project_id}")
        self.project_id = project_id


class MalformedDocument(StoreError):
    """A stored document failed schema validation at load time."""

    def __init__(self, project_id: str, reason: str):
        super().__init__(f"Stored document for '{project_id}' is malformed: {reason}")
        self.project_id = project_id
        self.reason = reason


class ImageResolutionFailure(SurveyStudioError):
    """Images for a single question could not be resolved."""


class MalformedCacheEntry(SurveyStudioError):
    """A session mirror entry has an invalid key or an unparseable record."""

"""Exception hierarchy for capture, storage and the staged AI pipeline.

Stage errors carry a short ``kind`` that is persisted with the stage state, so a
caller can tell "the model's formatting was bad" apart from "the model's content
was wrong" or "the provider failed" without parsing messages.
"""

from typing import List, Optional


class SourceDocsError(Exception):
    """Base class for all package errors."""


class CaptureError(SourceDocsError):
    """The page could not be read at all."""


class RunNotFoundError(SourceDocsError):
    """A person, run or artifact is missing from the run store."""


class InvalidTransitionError(SourceDocsError):
    """A stage was asked to move between states the state machine forbids."""


class StageError(SourceDocsError):
    kind = "stage"
    retry_hint = "try again"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class PreconditionError(StageError):
    kind = "precondition"
    retry_hint = "complete the earlier stage first"


class StageBusyError(StageError):
    kind = "busy"
    retry_hint = "wait for the running attempt to finish"


class ResponseFormatError(StageError):
    kind = "format"
    retry_hint = "fix the response"

    def __init__(self, message: str = "response is not valid JSON"):
        super().__init__(message)


class SchemaValidationError(StageError):
    kind = "schema"
    retry_hint = "fix the response"

    def __init__(self, stage: str, issues: List[str]):
        self.stage = stage
        self.issues = list(issues)
        lines = "\n".join(f"- {issue}" for issue in self.issues)
        super().__init__(f"{stage} output failed validation ({len(self.issues)} issue(s)):\n{lines}")


class ProviderError(StageError):
    kind = "provider"
    retry_hint = "try again"

    def __init__(self, message: str, status_code: Optional[int] = None, body: Optional[str] = None):
        if status_code is not None:
            message = f"{message} (HTTP {status_code})"
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class StorageError(StageError):
    """An accepted artifact could not be written; the previous artifact is still in place."""

    kind = "storage"
    retry_hint = "check the data directory, then try again"

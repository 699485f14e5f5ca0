# errors.py
# -----------------------------------------------------------------------------
# Error taxonomy for exam progress tracking.
# Domain errors propagate unchanged to the caller; only storage failures are
# wrapped (PersistenceError).
# -----------------------------------------------------------------------------
import math
from typing import Optional


class ExamProgressError(Exception):
    """Base class for every error raised by the progress subsystem."""


class ValidationError(ExamProgressError):
    """Malformed or mismatched input (answer shape, option index, empty batch)."""


class UnsupportedQuestionType(ValidationError):
    def __init__(self, question_type: object):
        self.question_type = question_type
        super().__init__(f"unsupported question type: {question_type!r}")


class NotFoundError(ExamProgressError):
    """A submitted question reference (or a progress record) does not exist."""


class LockedError(ExamProgressError):
    """Submission attempted while the exam's lock window is still open."""

    def __init__(self, remaining_seconds: float, message: Optional[str] = None):
        # whole seconds, never 0 while the window is open
        self.remaining_seconds = max(1, int(math.ceil(remaining_seconds)))
        super().__init__(message or f"Exam is locked. Try again in {self.remaining_seconds} seconds.")


class PersistenceError(ExamProgressError):
    """Reading or writing a ProgressRecord failed in the storage layer."""


__all__ = [
    "ExamProgressError",
    "ValidationError",
    "UnsupportedQuestionType",
    "NotFoundError",
    "LockedError",
    "PersistenceError",
]

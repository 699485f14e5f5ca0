# progress_record.py
# -----------------------------------------------------------------------------
# ProgressRecord: the persisted per-exam attempt aggregate, plus the lockout
# policy that governs when submissions are accepted.
#
#   attempt_log  append-only, full history of scored submissions
#   answer_log   replaced on every submission (latest attempt only)
#   0 <= correct_questions <= total_questions, always
# -----------------------------------------------------------------------------
import os
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from errors import LockedError

DEFAULT_MAX_SUBMISSIONS = 3
DEFAULT_LOCK_SECONDS = 60
DEFAULT_PASS_SCORE = 70


# ------------------------------- timestamps ----------------------------------
def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _aware(dt: datetime) -> datetime:
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def parse_ts(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return _aware(value)
    s = str(value).strip()
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    return _aware(datetime.fromisoformat(s))


def iso(dt: Optional[datetime]) -> Optional[str]:
    return _aware(dt).isoformat() if dt else None


# ------------------------------- log entries ---------------------------------
@dataclass
class AttemptLogEntry:
    percentage: float
    timestamp: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {"percentage": self.percentage, "timestamp": iso(self.timestamp)}

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "AttemptLogEntry":
        return cls(float(d.get("percentage") or 0.0), parse_ts(d.get("timestamp")))


@dataclass
class AnswerLogEntry:
    selected_answer: str
    correct_answer: str
    is_correct: bool
    time_taken: float
    timestamp: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "selectedAnswer": self.selected_answer,
            "correctAnswer": self.correct_answer,
            "isCorrect": self.is_correct,
            "timeTaken": self.time_taken,
            "timestamp": iso(self.timestamp),
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "AnswerLogEntry":
        return cls(
            selected_answer=str(d.get("selectedAnswer", "")),
            correct_answer=str(d.get("correctAnswer", "")),
            is_correct=bool(d.get("isCorrect")),
            time_taken=d.get("timeTaken") or 0,
            timestamp=parse_ts(d.get("timestamp")),
        )


# ------------------------------- the record ----------------------------------
@dataclass
class ProgressRecord:
    exam_id: str
    total_questions: int = 0
    correct_questions: int = 0
    attempts: int = 0
    highest_percentage: float = 0.0
    lock_until: Optional[datetime] = None
    lock_count: int = 0
    last_submitted_at: Optional[datetime] = None
    attempt_log: List[AttemptLogEntry] = field(default_factory=list)
    answer_log: List[AnswerLogEntry] = field(default_factory=list)

    @classmethod
    def new(cls, exam_id: str, total_questions: int) -> "ProgressRecord":
        return cls(exam_id=exam_id, total_questions=int(total_questions))

    @property
    def percentage(self) -> float:
        if self.total_questions <= 0:
            return 0.0
        return self.correct_questions / self.total_questions * 100

    def set_counts(self, total_questions: int, correct_questions: int) -> None:
        # clamp rather than raise: guards against double counting
        self.total_questions = max(0, int(total_questions))
        self.correct_questions = min(max(0, int(correct_questions)), self.total_questions)

    def raise_high_water(self, percentage: float) -> None:
        if percentage > self.highest_percentage:
            self.highest_percentage = min(100.0, float(percentage))

    def is_locked(self, now: datetime) -> bool:
        return self.lock_until is not None and self.lock_until > now

    # ---- serialization ----
    def to_dict(self) -> Dict[str, Any]:
        """Response shape (camelCase, ISO timestamps)."""
        return {
            "examId": self.exam_id,
            "totalQuestions": self.total_questions,
            "correctQuestions": self.correct_questions,
            "attempts": self.attempts,
            "highestPercentage": self.highest_percentage,
            "lockUntil": iso(self.lock_until),
            "lockCount": self.lock_count,
            "lastSubmittedAt": iso(self.last_submitted_at),
            "attemptLog": [e.to_dict() for e in self.attempt_log],
            "answerLog": [e.to_dict() for e in self.answer_log],
        }

    def to_row(self) -> Dict[str, Any]:
        """Column values for the exam_progress table (logs as JSON-ready lists)."""
        return {
            "exam_id": self.exam_id,
            "total_questions": self.total_questions,
            "correct_questions": self.correct_questions,
            "attempts": self.attempts,
            "highest_percentage": self.highest_percentage,
            "lock_until": self.lock_until,
            "lock_count": self.lock_count,
            "last_submitted_at": self.last_submitted_at,
            "attempt_log": [e.to_dict() for e in self.attempt_log],
            "answer_log": [e.to_dict() for e in self.answer_log],
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "ProgressRecord":
        return cls(
            exam_id=str(row["exam_id"]),
            total_questions=int(row.get("total_questions") or 0),
            correct_questions=int(row.get("correct_questions") or 0),
            attempts=int(row.get("attempts") or 0),
            highest_percentage=float(row.get("highest_percentage") or 0.0),
            lock_until=parse_ts(row.get("lock_until")),
            lock_count=int(row.get("lock_count") or 0),
            last_submitted_at=parse_ts(row.get("last_submitted_at")),
            attempt_log=[AttemptLogEntry.from_dict(e) for e in (row.get("attempt_log") or [])],
            answer_log=[AnswerLogEntry.from_dict(e) for e in (row.get("answer_log") or [])],
        )


# ------------------------------- lock policy ---------------------------------
@dataclass(frozen=True)
class ProgressPolicy:
    max_attempts: int = DEFAULT_MAX_SUBMISSIONS
    lock_duration: timedelta = timedelta(seconds=DEFAULT_LOCK_SECONDS)
    pass_score: float = DEFAULT_PASS_SCORE

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.lock_duration.total_seconds() <= 0:
            raise ValueError("lock_duration must be positive")

    @classmethod
    def from_env(cls) -> "ProgressPolicy":
        return cls(
            max_attempts=int(os.getenv("EXAM_MAX_SUBMISSIONS") or DEFAULT_MAX_SUBMISSIONS),
            lock_duration=timedelta(seconds=float(os.getenv("EXAM_LOCK_SECONDS") or DEFAULT_LOCK_SECONDS)),
            pass_score=float(os.getenv("EXAM_PASS_SCORE") or DEFAULT_PASS_SCORE),
        )

    def check_lock(self, record: ProgressRecord, now: datetime) -> None:
        if record.is_locked(now):
            raise LockedError((record.lock_until - now).total_seconds())

    def release_expired_lock(self, record: ProgressRecord, now: datetime) -> Optional[str]:
        """Clear a lapsed lock. Returns "cycle_reset", "expired" or None."""
        if record.lock_until is None or record.lock_until > now:
            return None
        record.lock_until = None
        if record.attempts >= self.max_attempts:
            record.attempts = 0
            return "cycle_reset"
        return "expired"

    def apply_lock_if_due(self, record: ProgressRecord, now: datetime) -> bool:
        if record.attempts < self.max_attempts:
            return False
        record.lock_until = now + self.lock_duration
        record.lock_count += 1
        return True

    def is_completed(self, record: ProgressRecord) -> bool:
        return record.highest_percentage >= self.pass_score


__all__ = [
    "AttemptLogEntry", "AnswerLogEntry", "ProgressRecord", "ProgressPolicy",
    "utcnow", "parse_ts", "iso",
]

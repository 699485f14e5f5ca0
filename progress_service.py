# progress_service.py
# -----------------------------------------------------------------------------
# Exam progress: submission state machine + progress recompute.
#
#   submit_answer:  load/create -> lock check -> lapsed-lock handling
#                   -> reset answer log -> attempts += 1 -> validate each answer
#                   -> counts/percentage -> attempt log + high-water mark
#                   -> lock if threshold reached -> persist -> snapshot
#   calculate_progress: find-or-create, set counts, raise high-water mark
#                   (never touches attempts / lock / attempt log)
#
# Everything for one exam_id runs inside a single store transaction; any
# error raised before the save leaves the stored record untouched.
# -----------------------------------------------------------------------------
from typing import Any, Callable, Dict, List, NamedTuple, Optional, Sequence
from datetime import datetime

from answer_validator import render_answer, validate
from errors import NotFoundError, PersistenceError, ValidationError
from progress_record import (
    AnswerLogEntry, AttemptLogEntry, ProgressPolicy, ProgressRecord, iso, utcnow,
)
from questions import Question, parse_questions

Clock = Callable[[], datetime]


class SubmittedAnswer(NamedTuple):
    question_ref: str
    answer: Any
    time_taken: float = 0


# ------------------------------ input helpers --------------------------------
def _require_exam_id(exam_id: Any) -> str:
    if not isinstance(exam_id, str) or not exam_id.strip():
        raise ValidationError("examId must be a non-empty string")
    return exam_id


def _is_int(v: Any) -> bool:
    return isinstance(v, int) and not isinstance(v, bool)


def parse_batch(answers: Any) -> List[SubmittedAnswer]:
    """Normalize ``[{questionRef, answer, timeTaken?}, ...]`` into SubmittedAnswer tuples."""
    if not isinstance(answers, (list, tuple)):
        raise ValidationError("answers must be a list")
    if not answers:
        raise ValidationError("answers must contain at least one entry")

    out: List[SubmittedAnswer] = []
    for i, item in enumerate(answers):
        if isinstance(item, SubmittedAnswer):
            out.append(item)
            continue
        if not isinstance(item, dict):
            raise ValidationError(f"answers[{i}] must be an object")
        ref = None
        for key in ("questionRef", "question_ref", "questionId", "question"):
            if item.get(key) is not None:
                ref = str(item[key])
                break
        if not ref:
            raise ValidationError(f"answers[{i}] has no questionRef")
        if "answer" not in item or item["answer"] is None:
            raise ValidationError(f"answers[{i}] has no answer")
        time_taken = item.get("timeTaken", 0) or 0
        if isinstance(time_taken, bool) or not isinstance(time_taken, (int, float)) or time_taken < 0:
            raise ValidationError(f"answers[{i}].timeTaken must be a non-negative number")
        out.append(SubmittedAnswer(ref, item["answer"], time_taken))
    return out


def _definitions(questions: Any) -> List[Question]:
    defs = parse_questions(questions)
    if not defs:
        raise ValidationError("at least one question definition is required")
    seen = set()
    for q in defs:
        if q.question_ref in seen:
            raise ValidationError(f'duplicate question definition for "{q.question_ref}"')
        seen.add(q.question_ref)
    return defs


# ============================= ProgressCalculator ============================
class ProgressCalculator:
    """Find-or-create / upsert of coarse percentage state from given counts."""

    def __init__(self, store, policy: Optional[ProgressPolicy] = None):
        self._store = store
        self.policy = policy or ProgressPolicy()

    @staticmethod
    def validate_counts(total_questions: Any, correct_questions: Any) -> None:
        if not _is_int(total_questions) or not _is_int(correct_questions):
            raise ValidationError("totalQuestions and correctQuestions must be integers")
        if total_questions <= 0:
            raise ValidationError("totalQuestions must be greater than 0")
        if correct_questions < 0:
            raise ValidationError("correctQuestions must not be negative")
        if correct_questions > total_questions:
            raise ValidationError("correctQuestions must not exceed totalQuestions")

    def apply(self, record: ProgressRecord, total_questions: int, correct_questions: int) -> ProgressRecord:
        # pure recompute: attempts, lock and attempt log are left alone
        record.set_counts(total_questions, correct_questions)
        record.raise_high_water(record.percentage)
        return record

    def snapshot(self, record: ProgressRecord) -> Dict[str, Any]:
        snap = record.to_dict()
        snap["percentage"] = record.percentage
        snap["isCompleted"] = self.policy.is_completed(record)
        return snap

    def calculate_progress(self, exam_id: str, total_questions: int, correct_questions: int) -> ProgressRecord:
        exam_id = _require_exam_id(exam_id)
        self.validate_counts(total_questions, correct_questions)

        with self._store.transaction(exam_id) as tx:
            record = tx.load()
            if record is None:
                record = ProgressRecord.new(exam_id, total_questions)
                print(f"[progress] created record for exam {exam_id} (recompute)", flush=True)
            self.apply(record, total_questions, correct_questions)
            tx.save(record)
        return record


# ============================ SubmissionOrchestrator =========================
class SubmissionOrchestrator:
    def __init__(self, store, calculator: ProgressCalculator,
                 policy: Optional[ProgressPolicy] = None, clock: Optional[Clock] = None):
        self._store = store
        self._calculator = calculator
        self.policy = policy or calculator.policy
        self._clock = clock or utcnow

    def _resolve(self, batch: Sequence[SubmittedAnswer], definitions: Sequence[Question]):
        by_ref = {q.question_ref: q for q in definitions}
        resolved = []
        for item in batch:
            q = by_ref.get(item.question_ref)
            if q is None:
                raise NotFoundError(f'No matching question found for "{item.question_ref}"')
            resolved.append((item, q))
        return resolved

    def submit_answer(self, exam_id: str, answers: Any, questions: Any) -> Dict[str, Any]:
        """Score one full batch of answers and return the updated snapshot.

        Raises ValidationError / UnsupportedQuestionType for malformed input,
        NotFoundError for an unknown questionRef, LockedError inside the lock
        window and PersistenceError("submission failed") for storage faults.
        """
        exam_id = _require_exam_id(exam_id)
        batch = parse_batch(answers)
        definitions = _definitions(questions)
        resolved = self._resolve(batch, definitions)
        total = len(definitions)
        now = self._clock()
        score = 0

        try:
            with self._store.transaction(exam_id) as tx:
                record = tx.load()
                if record is None:
                    record = ProgressRecord.new(exam_id, total)
                    print(f"[progress] created record for exam {exam_id}", flush=True)

                if record.is_locked(now):
                    print(f"[progress] exam {exam_id} locked until {iso(record.lock_until)}; submission rejected", flush=True)
                self.policy.check_lock(record, now)

                released = self.policy.release_expired_lock(record, now)
                if released == "cycle_reset":
                    print(f"[progress] exam {exam_id}: lock expired after {self.policy.max_attempts} attempts, attempts reset", flush=True)
                elif released:
                    print(f"[progress] exam {exam_id}: lock expired", flush=True)

                record.total_questions = total
                record.answer_log = []
                record.attempts += 1

                for item, question in resolved:
                    result = validate(item.answer, question)
                    score += result.score_delta
                    selected, correct = render_answer(item.answer, question)
                    record.answer_log.append(AnswerLogEntry(
                        selected_answer=selected,
                        correct_answer=correct,
                        is_correct=result.is_correct,
                        time_taken=item.time_taken,
                        timestamp=now,
                    ))

                correct_count = sum(1 for e in record.answer_log if e.is_correct)
                record.set_counts(total, correct_count)
                percentage = record.percentage

                record.attempt_log.append(AttemptLogEntry(percentage, now))
                record.raise_high_water(percentage)
                record.last_submitted_at = now

                if self.policy.apply_lock_if_due(record, now):
                    print(f"[progress] exam {exam_id}: lock applied until {iso(record.lock_until)}, "
                          f"lockCount={record.lock_count}", flush=True)

                self._calculator.apply(record, record.total_questions, record.correct_questions)
                tx.save(record)
        except PersistenceError as e:
            print(f"[progress] submission failed for exam {exam_id}: {e}", flush=True)
            raise PersistenceError("submission failed") from e

        snap = self._calculator.snapshot(record)
        snap["lastSubmittedAt"] = iso(record.last_submitted_at)
        snap["score"] = score
        return snap


# ============================== service facade ===============================
class ExamProgressService:
    """Entry points used by the HTTP layer; every method returns a snapshot dict."""

    def __init__(self, store, policy: Optional[ProgressPolicy] = None, clock: Optional[Clock] = None):
        self.store = store
        self.policy = policy or ProgressPolicy.from_env()
        self.calculator = ProgressCalculator(store, self.policy)
        self.orchestrator = SubmissionOrchestrator(store, self.calculator, self.policy, clock)

    def submit_answer(self, exam_id: str, answers: Any, questions: Any) -> Dict[str, Any]:
        return self.orchestrator.submit_answer(exam_id, answers, questions)

    def calculate_progress(self, exam_id: str, total_questions: int, correct_questions: int) -> Dict[str, Any]:
        record = self.calculator.calculate_progress(exam_id, total_questions, correct_questions)
        return self.calculator.snapshot(record)

    def get_progress(self, exam_id: str) -> Dict[str, Any]:
        exam_id = _require_exam_id(exam_id)
        record = self.store.get(exam_id)
        if record is None:
            raise NotFoundError(f"Progress not found for exam {exam_id}")
        return self.calculator.snapshot(record)


__all__ = [
    "SubmittedAnswer", "parse_batch", "ProgressCalculator",
    "SubmissionOrchestrator", "ExamProgressService",
]

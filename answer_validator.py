# answer_validator.py
# -----------------------------------------------------------------------------
# Pure answer checking: one submitted answer vs one QuestionDefinition.
# No I/O, no state. Malformed input raises ValidationError (never "incorrect").
# -----------------------------------------------------------------------------
import re
import unicodedata
from typing import Any, List, NamedTuple, Tuple

from errors import UnsupportedQuestionType, ValidationError
from questions import (
    MultipleChoiceQuestion, QuestionDefinition, SingleChoiceQuestion, TrueFalseQuestion,
)

_WS_RUN = re.compile(r"\s+")


class AnswerResult(NamedTuple):
    is_correct: bool
    score_delta: float


def normalize_text(value: Any) -> str:
    """trim + lowercase + collapse whitespace runs + drop zero-width/format chars."""
    s = "".join(ch for ch in str(value) if unicodedata.category(ch) != "Cf")
    return _WS_RUN.sub(" ", s).strip().lower()


def coerce_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        s = normalize_text(value)
        if s == "true":
            return True
        if s == "false":
            return False
    raise ValidationError('True/False answer must be a boolean or "true"/"false" string')


def _require_text(submitted: Any, question: QuestionDefinition) -> str:
    if not isinstance(submitted, str):
        raise ValidationError(
            f"question {question.question_ref!r}: single_choice answer must be a string, got {type(submitted).__name__}"
        )
    return submitted


def _require_text_list(submitted: Any, question: QuestionDefinition) -> List[str]:
    if not isinstance(submitted, (list, tuple)) or not submitted:
        raise ValidationError(
            f"question {question.question_ref!r}: multiple_choice answer must be a non-empty list of strings"
        )
    if not all(isinstance(s, str) for s in submitted):
        raise ValidationError(f"question {question.question_ref!r}: multiple_choice entries must be strings")
    return list(submitted)


def _correct_texts(question: MultipleChoiceQuestion) -> List[str]:
    return [question.option_text(i) for i in question.correct_indices]


def is_answer_correct(submitted: Any, question: QuestionDefinition) -> bool:
    if isinstance(question, SingleChoiceQuestion):
        expected = question.option_text(question.correct_index)
        return normalize_text(_require_text(submitted, question)) == normalize_text(expected)

    if isinstance(question, MultipleChoiceQuestion):
        got = sorted(normalize_text(s) for s in _require_text_list(submitted, question))
        want = sorted(normalize_text(s) for s in _correct_texts(question))
        return got == want

    if isinstance(question, TrueFalseQuestion):
        return coerce_bool(submitted) == question.correct

    raise UnsupportedQuestionType(getattr(question, "question_type", type(question).__name__))


def validate(submitted: Any, question: QuestionDefinition) -> AnswerResult:
    """Check one answer. ``score_delta`` is the question's points when correct, else 0."""
    if submitted is None:
        raise ValidationError(f"question {getattr(question, 'question_ref', '?')!r}: missing answer")
    ok = is_answer_correct(submitted, question)
    return AnswerResult(ok, question.points if ok else 0)


def render_answer(submitted: Any, question: QuestionDefinition) -> Tuple[str, str]:
    """Display strings (selected, correct) for an answer log entry.

    multiple_choice -> comma-joined option texts; true_false -> "true"/"false".
    Call after validate(); shapes are assumed valid.
    """
    if isinstance(question, SingleChoiceQuestion):
        return str(submitted), question.option_text(question.correct_index)
    if isinstance(question, MultipleChoiceQuestion):
        return ", ".join(submitted), ", ".join(_correct_texts(question))
    if isinstance(question, TrueFalseQuestion):
        return str(coerce_bool(submitted)).lower(), str(question.correct).lower()
    raise UnsupportedQuestionType(getattr(question, "question_type", type(question).__name__))


__all__ = ["AnswerResult", "normalize_text", "coerce_bool", "is_answer_correct", "validate", "render_answer"]

# questions.py
# -----------------------------------------------------------------------------
# Canonical question definitions (read-only, owned by the question authority).
# One variant per question kind; each variant carries only the correct-answer
# representation that is valid for that kind:
#   single_choice   -> correct_index   (index into options)
#   multiple_choice -> correct_indices (non-empty, variable length)
#   true_false      -> correct         (bool; payload index 0 => True, 1 => False)
# -----------------------------------------------------------------------------
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from errors import UnsupportedQuestionType, ValidationError

SINGLE_CHOICE = "single_choice"
MULTIPLE_CHOICE = "multiple_choice"
TRUE_FALSE = "true_false"

QUESTION_TYPES = (SINGLE_CHOICE, MULTIPLE_CHOICE, TRUE_FALSE)
_TYPE_ALIASES = {"multi_choice": MULTIPLE_CHOICE}

DEFAULT_POINTS = 1
TRUE_FALSE_OPTIONS = ("True", "False")

_MISSING = object()


class QuestionDefinition:
    """Common surface of the three question variants."""

    question_ref: str
    options: Tuple[str, ...]
    points: float
    question_type: str

    def option_text(self, index: int) -> str:
        if isinstance(index, bool) or not isinstance(index, int):
            raise ValidationError(f"question {self.question_ref!r}: option index must be an integer, got {index!r}")
        if not (0 <= index < len(self.options)):
            raise ValidationError(
                f"question {self.question_ref!r}: option index {index} outside 0..{len(self.options) - 1}"
            )
        return self.options[index]

    @staticmethod
    def from_payload(payload: Dict[str, Any]) -> "Question":
        return parse_question(payload)


@dataclass(frozen=True)
class SingleChoiceQuestion(QuestionDefinition):
    question_ref: str
    options: Tuple[str, ...]
    correct_index: int
    points: float = DEFAULT_POINTS
    question_type: str = field(default=SINGLE_CHOICE, init=False)


@dataclass(frozen=True)
class MultipleChoiceQuestion(QuestionDefinition):
    question_ref: str
    options: Tuple[str, ...]
    correct_indices: Tuple[int, ...]
    points: float = DEFAULT_POINTS
    question_type: str = field(default=MULTIPLE_CHOICE, init=False)


@dataclass(frozen=True)
class TrueFalseQuestion(QuestionDefinition):
    question_ref: str
    correct: bool
    options: Tuple[str, ...] = TRUE_FALSE_OPTIONS
    points: float = DEFAULT_POINTS
    question_type: str = field(default=TRUE_FALSE, init=False)


Question = Union[SingleChoiceQuestion, MultipleChoiceQuestion, TrueFalseQuestion]


# ------------------------------ payload helpers ------------------------------
def _first(payload: Dict[str, Any], *keys: str) -> Any:
    for k in keys:
        if k in payload and payload[k] is not None:
            return payload[k]
    return _MISSING


def _is_index(v: Any) -> bool:
    return isinstance(v, int) and not isinstance(v, bool)


def normalize_question_type(raw: Any) -> str:
    qtype = str(raw or "").strip().lower()
    qtype = _TYPE_ALIASES.get(qtype, qtype)
    if qtype not in QUESTION_TYPES:
        raise UnsupportedQuestionType(raw)
    return qtype


def _parse_points(payload: Dict[str, Any], ref: str) -> float:
    raw = payload.get("points")
    if raw is None:
        return DEFAULT_POINTS
    if isinstance(raw, bool) or not isinstance(raw, (int, float)) or raw < 0:
        raise ValidationError(f"question {ref!r}: points must be a non-negative number")
    return raw


def _parse_options(payload: Dict[str, Any], ref: str) -> Optional[Tuple[str, ...]]:
    raw = _first(payload, "options", "exam_options")
    if raw is _MISSING:
        return None
    if not isinstance(raw, (list, tuple)):
        raise ValidationError(f"question {ref!r}: options must be a list of strings")
    return tuple(str(o) for o in raw)


def parse_question(payload: Dict[str, Any]) -> Question:
    """Build the matching variant from a raw question document.

    Accepts both the camelCase request spelling and the snake_case field names
    stored with exams (``exam_options``, ``correct_options``,
    ``correct_multiple_options``, ``correct_boolean_option``).
    """
    if isinstance(payload, QuestionDefinition):
        return payload  # already parsed
    if not isinstance(payload, dict):
        raise ValidationError("question definition must be an object")

    ref = _first(payload, "questionRef", "question_ref", "id", "_id", "question")
    if ref is _MISSING or str(ref).strip() == "":
        raise ValidationError("question definition has no reference (questionRef / id / question)")
    ref = str(ref)

    qtype = normalize_question_type(_first(payload, "questionType", "question_type", "type"))
    points = _parse_points(payload, ref)
    options = _parse_options(payload, ref)

    if qtype == SINGLE_CHOICE:
        correct = _first(payload, "correctAnswer", "correct_answer", "correct_options")
        if not _is_index(correct):
            raise ValidationError(f"question {ref!r}: single_choice needs one integer correct option index")
        if not options:
            raise ValidationError(f"question {ref!r}: single_choice needs options")
        return SingleChoiceQuestion(ref, options, correct, points)

    if qtype == MULTIPLE_CHOICE:
        correct = _first(payload, "correctAnswer", "correct_answer", "correct_multiple_options", "correct_options")
        if not isinstance(correct, (list, tuple)) or not correct or not all(_is_index(i) for i in correct):
            raise ValidationError(f"question {ref!r}: multiple_choice needs a non-empty list of integer option indices")
        if not options:
            raise ValidationError(f"question {ref!r}: multiple_choice needs options")
        return MultipleChoiceQuestion(ref, options, tuple(correct), points)

    # true_false
    correct = _first(payload, "correctAnswer", "correct_answer", "correct_boolean_option", "correct_options")
    if isinstance(correct, bool):
        decoded = correct
    elif _is_index(correct) and correct in (0, 1):
        decoded = correct == 0
    else:
        raise ValidationError(f"question {ref!r}: true_false needs a boolean or index 0 (true) / 1 (false)")
    return TrueFalseQuestion(ref, decoded, options or TRUE_FALSE_OPTIONS, points)


def parse_questions(payloads: Iterable[Any]) -> List[Question]:
    if payloads is None or isinstance(payloads, (str, bytes, dict)):
        raise ValidationError("question definitions must be a list")
    return [parse_question(p) for p in payloads]


__all__ = [
    "SINGLE_CHOICE", "MULTIPLE_CHOICE", "TRUE_FALSE", "QUESTION_TYPES",
    "QuestionDefinition", "SingleChoiceQuestion", "MultipleChoiceQuestion",
    "TrueFalseQuestion", "Question", "normalize_question_type",
    "parse_question", "parse_questions",
]

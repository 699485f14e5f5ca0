import json
import sys
from datetime import timedelta
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

import question_bank_loader  # noqa: E402
from errors import ValidationError  # noqa: E402
from progress_record import ProgressPolicy  # noqa: E402
from progress_service import ExamProgressService  # noqa: E402
from progress_store import MemoryProgressStore  # noqa: E402
from questions import parse_questions  # noqa: E402


@pytest.fixture
def bank_dir(tmp_path, monkeypatch):
    monkeypatch.setattr(question_bank_loader, "QUESTION_BANK_DIR", tmp_path)
    question_bank_loader.clear_cache()
    yield tmp_path
    question_bank_loader.clear_cache()


def test_loads_plain_list(bank_dir):
    (bank_dir / "exam-a.json").write_text(json.dumps([
        {"id": "1", "question_type": "true_false", "correct_options": 1},
    ]), encoding="utf-8")
    assert question_bank_loader.load_question_set("exam-a") == [
        {"id": "1", "question_type": "true_false", "correct_options": 1},
    ]


def test_loads_object_with_questions_key_and_skips_junk(bank_dir):
    (bank_dir / "exam-b.json").write_text(json.dumps({
        "exam_title": "B",
        "questions": [{"id": "1"}, "junk", 3],
    }), encoding="utf-8")
    assert question_bank_loader.load_question_set("exam-b") == [{"id": "1"}]


def test_missing_file_is_empty(bank_dir):
    assert question_bank_loader.load_question_set("nothing-here") == []


def test_unreadable_file_is_empty_and_logged(bank_dir, capsys):
    (bank_dir / "broken.json").write_text("{not json", encoding="utf-8")
    assert question_bank_loader.load_question_set("broken") == []
    assert "[question_bank] failed to load" in capsys.readouterr().out


def test_results_are_cached_until_cleared(bank_dir):
    path = bank_dir / "exam-c.json"
    path.write_text(json.dumps([{"id": "old"}]), encoding="utf-8")
    assert question_bank_loader.load_question_set("exam-c") == [{"id": "old"}]
    path.write_text(json.dumps([{"id": "new"}]), encoding="utf-8")
    assert question_bank_loader.load_question_set("exam-c") == [{"id": "old"}]
    question_bank_loader.clear_cache()
    assert question_bank_loader.load_question_set("exam-c") == [{"id": "new"}]


def test_returned_documents_are_copies(bank_dir):
    (bank_dir / "exam-d.json").write_text(json.dumps([{"id": "1"}]), encoding="utf-8")
    first = question_bank_loader.load_question_set("exam-d")
    first[0]["id"] = "changed"
    assert question_bank_loader.load_question_set("exam-d") == [{"id": "1"}]


@pytest.mark.parametrize("exam_id", ["../secrets", "a/b", "", ".hidden", "x" * 200, "exam 1", "64f0c2:round@2"])
def test_ids_that_cannot_name_a_file_have_no_bank_set(bank_dir, exam_id):
    assert question_bank_loader.load_question_set(exam_id) == []
    with pytest.raises(ValidationError):
        question_bank_loader.question_set_path(exam_id)


def test_file_added_after_first_lookup_is_picked_up(bank_dir):
    assert question_bank_loader.load_question_set("exam-late") == []
    (bank_dir / "exam-late.json").write_text(json.dumps([{"id": "1"}]), encoding="utf-8")
    assert question_bank_loader.load_question_set("exam-late") == [{"id": "1"}]


def test_repaired_file_is_picked_up(bank_dir, capsys):
    path = bank_dir / "exam-fix.json"
    path.write_text("[{oops", encoding="utf-8")
    assert question_bank_loader.load_question_set("exam-fix") == []
    path.write_text(json.dumps([{"id": "1"}]), encoding="utf-8")
    assert question_bank_loader.load_question_set("exam-fix") == [{"id": "1"}]


def test_bundled_demo_exam_scores_end_to_end():
    question_bank_loader.clear_cache()
    questions = question_bank_loader.load_question_set("demo-exam")
    assert len(parse_questions(questions)) == 3

    service = ExamProgressService(MemoryProgressStore(), ProgressPolicy(lock_duration=timedelta(minutes=1)))
    snap = service.submit_answer("demo-exam", [
        {"questionRef": "Which keyword defines a function in Python?", "answer": "def"},
        {"questionRef": "Which of these are immutable built-in types?", "answer": ["frozenset", "tuple"]},
        {"questionRef": "Indentation is significant in Python.", "answer": True},
    ], questions)
    assert snap["correctQuestions"] == 3
    assert snap["highestPercentage"] == 100

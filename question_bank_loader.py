"""Utilities for loading exam question sets from disk.

Each exam lives in ``<QUESTION_BANK_DIR>/<exam_id>.json`` holding either a
list of question documents or an object with a ``questions`` list. Round or
subset selection happens before the file is written; the loader returns the
set as-is.
"""

from __future__ import annotations

import json
import os
import re
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Tuple

from errors import ValidationError

QUESTION_BANK_DIR = Path(os.getenv("QUESTION_BANK_DIR") or (Path(__file__).resolve().parent / "question_bank"))

_SAFE_EXAM_ID = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")


@lru_cache(maxsize=128)
def _load_cached(path_str: str) -> Tuple[Dict[str, Any], ...]:
    # raises on a missing or unreadable file, so only good loads are cached
    with open(path_str, "r", encoding="utf-8") as fh:
        data = json.load(fh)
    if isinstance(data, dict):
        data = data.get("questions")
    if not isinstance(data, list):
        return tuple()
    return tuple(q for q in data if isinstance(q, dict))


def is_bank_exam_id(exam_id: Any) -> bool:
    """True when ``exam_id`` can name a file in the bank directory."""
    return isinstance(exam_id, str) and bool(_SAFE_EXAM_ID.match(exam_id)) and ".." not in exam_id


def question_set_path(exam_id: str) -> Path:
    if not is_bank_exam_id(exam_id):
        raise ValidationError(f"invalid exam id for question bank lookup: {exam_id!r}")
    return Path(QUESTION_BANK_DIR) / f"{exam_id}.json"


def load_question_set(exam_id: str) -> List[Dict[str, Any]]:
    """Raw question documents for ``exam_id``.

    Returns [] when there is no usable file, including exam ids that cannot
    name one; callers then fall back to questions sent with the request.
    A file added or repaired later is picked up on the next call.
    """
    if not is_bank_exam_id(exam_id):
        return []
    path = question_set_path(exam_id)
    try:
        docs = _load_cached(str(path))
    except FileNotFoundError:
        return []
    except (OSError, ValueError) as exc:
        print(f"[question_bank] failed to load '{path}': {exc}")
        return []
    return [dict(q) for q in docs]


def clear_cache() -> None:
    _load_cached.cache_clear()


__all__ = ["load_question_set", "question_set_path", "is_bank_exam_id", "clear_cache"]

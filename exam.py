# exam.py
# -----------------------------------------------------------------------------
# Take-exam progress endpoints (JSON only).
# - POST /take-exam/<exam_id>/submit     full answer batch -> scored snapshot
# - POST /take-exam/<exam_id>/calculate  recompute from total/correct counts
# - GET  /take-exam/<exam_id>/progress   current snapshot
# Thin adapter: all rules live in ExamProgressService; errors map to statuses.
# -----------------------------------------------------------------------------

from typing import Any, Callable, Dict, List, Optional

from flask import Blueprint, request, jsonify

from errors import (
    ExamProgressError, LockedError, NotFoundError, PersistenceError, ValidationError,
)

# -----------------------------------------------------------------------------
# Blueprint factory
# -----------------------------------------------------------------------------
def create_exam_blueprint(base_path: str, deps: Dict[str, Any], name: str = "exam") -> Blueprint:
    """
    Factory that returns a Blueprint mounted at base_path + "/take-exam".
    Required deps: progress_service
    Optional deps: load_questions (exam_id -> list of question documents)
    """
    url_prefix = (base_path or "").rstrip("/") + "/take-exam"
    bp = Blueprint(name, __name__, url_prefix=url_prefix)

    # ---- Required deps -------------------------------------------------------
    service = deps["progress_service"]
    load_questions: Optional[Callable[[str], List[Dict[str, Any]]]] = deps.get("load_questions")

    # ------------------------------- helpers ----------------------------------
    def _json_body() -> Dict[str, Any]:
        data = request.get_json(force=True, silent=True)
        if data is None:
            raise ValidationError("request body must be JSON")
        if not isinstance(data, dict):
            raise ValidationError("request body must be a JSON object")
        return data

    def _questions_for(exam_id: str, body: Dict[str, Any]) -> Any:
        if load_questions:
            qs = load_questions(exam_id)
            if qs:
                return qs
        return body.get("questions") or []

    def _ok(snapshot: Dict[str, Any], status: int = 200):
        return jsonify({"ok": True, **snapshot}), status

    @bp.errorhandler(ExamProgressError)
    def _on_progress_error(e: ExamProgressError):
        if isinstance(e, LockedError):
            resp = jsonify({"ok": False, "error": str(e), "remainingSeconds": e.remaining_seconds})
            resp.headers["Retry-After"] = str(e.remaining_seconds)
            return resp, 423
        if isinstance(e, ValidationError):
            return jsonify({"ok": False, "error": str(e)}), 400
        if isinstance(e, NotFoundError):
            return jsonify({"ok": False, "error": str(e)}), 404
        if isinstance(e, PersistenceError):
            return jsonify({"ok": False, "error": str(e)}), 503
        return jsonify({"ok": False, "error": str(e)}), 500

    # --------------------------------- routes ---------------------------------
    @bp.post("/<exam_id>/submit")
    def submit_answers(exam_id: str):
        body = _json_body()
        answers = body.get("answers")
        if answers is None:
            answers = body.get("quiz_answers")  # legacy client spelling
        snapshot = service.submit_answer(exam_id, answers, _questions_for(exam_id, body))
        return _ok(snapshot)

    @bp.post("/<exam_id>/calculate")
    def calculate_progress(exam_id: str):
        body = _json_body()
        snapshot = service.calculate_progress(
            exam_id, body.get("totalQuestions"), body.get("correctQuestions")
        )
        return _ok(snapshot)

    @bp.get("/<exam_id>/progress")
    def get_progress(exam_id: str):
        return _ok(service.get_progress(exam_id))

    return bp

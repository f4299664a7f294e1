from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request
from pydantic import ValidationError

from ..schemas import QueryRequest
from ..services.rounds import RoundRepository

bp = Blueprint("query", __name__)
round_repo = RoundRepository()


def _validation_message(exc: ValidationError) -> str:
    return "; ".join(error["msg"] for error in exc.errors())


@bp.post("/query")
def run_query():
    payload = request.get_json(force=True, silent=True)
    if not isinstance(payload, dict):
        return jsonify({"error": "query body must be a JSON object"}), 400
    try:
        query = QueryRequest(**payload)
    except ValidationError as exc:
        return jsonify({"error": _validation_message(exc)}), 400

    try:
        rows = round_repo.query(query)
    except ValueError as exc:
        return jsonify({"error": str(exc)}), 400
    current_app.logger.debug("Query on %s returned %s rows", query.table, len(rows))
    return jsonify(rows)

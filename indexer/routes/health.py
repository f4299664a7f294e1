from __future__ import annotations

from flask import Blueprint, jsonify

from ..schemas import HealthResponse
from ..services.rounds import RoundRepository

bp = Blueprint("health", __name__)
round_repo = RoundRepository()


@bp.get("/health")
def health():
    response = HealthResponse(status="ok", last_block=round_repo.get_last_block())
    return jsonify(response.model_dump())

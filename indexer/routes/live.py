from __future__ import annotations

import json

from flask import Blueprint, Response, current_app, jsonify, request, stream_with_context
from pydantic import ValidationError

from ..config import load_settings
from ..schemas import QueryRequest
from ..services.live import snapshot_stream
from ..services.rounds import RoundRepository
from .query import _validation_message

bp = Blueprint("live", __name__)
round_repo = RoundRepository()


@bp.get("/live")
def live_query():
    raw = request.args.get("query")
    if not raw:
        return jsonify({"error": "query parameter is required"}), 400
    try:
        query = QueryRequest(**json.loads(raw))
    except (json.JSONDecodeError, TypeError):
        return jsonify({"error": "query parameter must be a JSON object"}), 400
    except ValidationError as exc:
        return jsonify({"error": _validation_message(exc)}), 400

    settings = load_settings()
    max_snapshots = current_app.config.get("LIVE_MAX_SNAPSHOTS")
    current_app.logger.info("Live subscription opened on %s", query.table)
    stream = snapshot_stream(
        round_repo,
        query,
        poll_seconds=settings.live_poll_seconds,
        keepalive_seconds=settings.keepalive_seconds,
        max_snapshots=max_snapshots,
        logger=current_app.logger,
    )
    headers = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}
    return Response(stream_with_context(stream), mimetype="text/event-stream", headers=headers)

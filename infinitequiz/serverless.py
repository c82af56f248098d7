"""
On-demand function entry point for quiz generation.

Takes an API-gateway style event ({"httpMethod": ..., "body": "..."}) and
returns {"statusCode", "headers", "body"}. Same behaviour as POST /api/quiz.
"""
import json

from .logging_utils import get_logger
from .quizgen import QuizGenerationError, error_payload, generate_quiz

logger = get_logger("infinitequiz.serverless")

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "authorization, x-client-info, apikey, content-type",
}


def _response(status: int, body, content_type: str = "application/json") -> dict:
    return {
        "statusCode": status,
        "headers": {**CORS_HEADERS, "Content-Type": content_type},
        "body": body if isinstance(body, str) else json.dumps(body, ensure_ascii=False),
    }


def _read_body(event: dict) -> dict:
    raw = event.get("body")
    if raw is None or raw == "":
        return {}
    if isinstance(raw, dict):
        return raw
    data = json.loads(raw)
    if not isinstance(data, dict):
        raise QuizGenerationError("Request body must be a JSON object")
    return data


def handler(event: dict, context=None, client=None) -> dict:
    method = (event.get("httpMethod") or event.get("method") or "POST").upper()
    if method == "OPTIONS":
        return _response(200, "ok", content_type="text/plain")
    try:
        body = _read_body(event)
        quiz = generate_quiz(body.get("category"), body.get("difficulty"), client=client)
    except (QuizGenerationError, ValueError) as exc:
        logger.error("quiz_generation_failed", extra={"error": str(exc)})
        return _response(500, error_payload(exc))
    return _response(200, quiz)

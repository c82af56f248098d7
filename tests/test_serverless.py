import json

from infinitequiz import quizgen
from infinitequiz.serverless import handler


def test_options_preflight():
    resp = handler({"httpMethod": "OPTIONS"})
    assert resp["statusCode"] == 200
    assert resp["body"] == "ok"
    assert resp["headers"]["Access-Control-Allow-Origin"] == "*"


def test_ard_request():
    resp = handler({"httpMethod": "POST", "body": json.dumps({"category": "ARD", "difficulty": "medium"})})
    assert resp["statusCode"] == 200
    assert resp["headers"]["Content-Type"] == "application/json"
    body = json.loads(resp["body"])
    assert len(body["questions"]) == 10
    assert {q["category"] for q in body["questions"]} == {"ARD"}


def test_failure_returns_uniform_500(monkeypatch):
    def boom(category, difficulty, **kw):
        raise quizgen.QuizGenerationError("No content received from AI")

    monkeypatch.setattr("infinitequiz.serverless.generate_quiz", boom)
    resp = handler({"httpMethod": "POST", "body": json.dumps({"category": "Space"})})
    assert resp["statusCode"] == 500
    assert json.loads(resp["body"]) == {"error": "Failed to generate quiz",
                                        "details": "No content received from AI"}


def test_malformed_body_is_a_500():
    resp = handler({"httpMethod": "POST", "body": "{not json"})
    assert resp["statusCode"] == 500
    body = json.loads(resp["body"])
    assert set(body) == {"error", "details"}
    assert handler({"httpMethod": "POST", "body": "[1]"})["statusCode"] == 500


def test_non_string_fields_are_a_500():
    resp = handler({"httpMethod": "POST", "body": json.dumps({"category": "ARD", "difficulty": 5})})
    assert resp["statusCode"] == 500
    assert json.loads(resp["body"]) == {"error": "Failed to generate quiz",
                                        "details": "difficulty must be a string"}
    resp = handler({"httpMethod": "POST", "body": json.dumps({"category": ["Space"]})})
    assert resp["statusCode"] == 500

"""
HTTP client for the quiz API.

Wraps an httpx.Client; FastAPI's TestClient is an httpx.Client too, so the
same code drives an in-process app in tests.
"""
from typing import Any, Dict, List, Optional

import httpx

from .logging_utils import get_logger

logger = get_logger("infinitequiz.client")


class ApiError(Exception):
    def __init__(self, status: int, detail: Any, payload: Optional[dict] = None):
        super().__init__(f"{status}: {detail}")
        self.status = status
        self.detail = detail
        self.payload = payload or {}


class QuizApiClient:
    def __init__(self, base_url: str = "", http: Optional[httpx.Client] = None, timeout: float = 30.0):
        self.http = http or httpx.Client(base_url=base_url, timeout=timeout)

    def close(self) -> None:
        self.http.close()

    def _request(self, method: str, path: str, token: Optional[str] = None, **kwargs) -> Any:
        headers = kwargs.pop("headers", {})
        if token:
            headers["Authorization"] = f"Bearer {token}"
        resp = self.http.request(method, path, headers=headers, **kwargs)
        try:
            data = resp.json()
        except ValueError:
            data = {"detail": resp.text}
        if resp.status_code >= 400:
            detail = (data.get("detail") or data.get("details") or data.get("error")) if isinstance(data, dict) else data
            logger.debug("api_error", extra={"method": method, "path": path, "status": resp.status_code})
            raise ApiError(resp.status_code, detail, data if isinstance(data, dict) else None)
        return data

    def save_user(self, device_id: str, username: str) -> Dict[str, Any]:
        return self._request("POST", "/api/users", json={"device_id": device_id, "username": username})

    def create_room(self, name: str, device_id: Optional[str] = None) -> Dict[str, Any]:
        return self._request("POST", "/api/rooms", json={"name": name, "device_id": device_id})

    def join_room(self, code: str, name: str, device_id: Optional[str] = None) -> Dict[str, Any]:
        return self._request("POST", f"/api/rooms/{code}/join", json={"name": name, "device_id": device_id})

    def get_room(self, code: str) -> Dict[str, Any]:
        return self._request("GET", f"/api/rooms/{code}")

    def start_game(self, code: str, questions: Optional[list] = None,
                   category: Optional[str] = None, difficulty: Optional[str] = None) -> Dict[str, Any]:
        body: Dict[str, Any] = {"category": category, "difficulty": difficulty}
        if questions is not None:
            body["questions"] = questions
        return self._request("POST", f"/api/rooms/{code}/start", json=body)

    def submit_result(self, player_id: int, token: Optional[str], score: int, time_taken: int,
                      status: str = "finished") -> Dict[str, Any]:
        return self._request(
            "PATCH", f"/api/players/{player_id}", token=token,
            json={"score": score, "time_taken": time_taken, "status": status},
        )

    def leaderboard(self, code: str) -> List[Dict[str, Any]]:
        return self._request("GET", f"/api/rooms/{code}/leaderboard")["standings"]

    def rematch(self, code: str) -> Dict[str, Any]:
        return self._request("POST", f"/api/rooms/{code}/rematch")

    def generate_quiz(self, category: Optional[str] = None, difficulty: Optional[str] = None) -> Dict[str, Any]:
        return self._request("POST", "/api/quiz", json={"category": category, "difficulty": difficulty})

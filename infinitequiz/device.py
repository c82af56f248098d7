"""
Per-device local storage for the client: a small JSON file standing in for
the browser's localStorage.
"""
import json
import threading
import uuid
from pathlib import Path
from typing import Any, Optional

import httpx

from .client import ApiError
from .logging_utils import get_logger

logger = get_logger("infinitequiz.device")

DEVICE_ID = "quiz_device_id"
USERNAME = "quiz_username"
USER_ID = "quiz_user_id"
PLAYER_ID = "quiz_player_id"
PLAYER_TOKEN = "quiz_player_token"

_DEFAULT_PATH = Path.home() / ".infinitequiz" / "device.json"


def snapshot_key(room_code: str) -> str:
    return f"multiplayerGame_{room_code}"


class DeviceStorage:
    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path else _DEFAULT_PATH
        self._lock = threading.Lock()

    def _read(self) -> dict:
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except ValueError:
            logger.warning("device_storage_corrupt", extra={"path": str(self.path)})
            return {}
        return data if isinstance(data, dict) else {}

    def _write(self, data: dict) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(data, ensure_ascii=False), encoding="utf-8")

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            return self._read().get(key, default)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            data = self._read()
            data[key] = value
            self._write(data)

    def remove(self, key: str) -> None:
        with self._lock:
            data = self._read()
            if data.pop(key, None) is not None:
                self._write(data)

    @property
    def device_id(self) -> str:
        """Stable id for this device, created on first use"""
        with self._lock:
            data = self._read()
            if not data.get(DEVICE_ID):
                data[DEVICE_ID] = str(uuid.uuid4())
                self._write(data)
            return data[DEVICE_ID]

    def remember_player(self, player: dict, token: Optional[str]) -> None:
        self.set(PLAYER_ID, player.get("id"))
        self.set(PLAYER_TOKEN, token)

    # per-room game snapshots are left by single-player sessions; multiplayer
    # never restores one, it only clears it when a match finishes
    def clear_snapshot(self, room_code: str) -> None:
        self.remove(snapshot_key(room_code))


def save_username(api, storage: DeviceStorage, username: str) -> str:
    """Trim and store the username locally, upserting the device profile.

    The profile upsert is best effort: the name is kept locally even when
    the server call fails.
    """
    trimmed = (username or "").strip()
    if not trimmed:
        raise ValueError("Please enter a username")
    try:
        user = api.save_user(storage.device_id, trimmed)
    except (ApiError, httpx.HTTPError) as exc:
        logger.warning("username_upsert_failed", extra={"error": str(exc)})
        user = None
    storage.set(USERNAME, trimmed)
    if user and user.get("id") is not None:
        storage.set(USER_ID, user["id"])
    return trimmed

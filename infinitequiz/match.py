"""
Client-side multiplayer flow.

MultiplayerGame reconciles its countdown against the room's shared
game_start_time, serves the questions in a per-player order and writes the
player's own result. LeaderboardView keeps the room standings fresh through a
change subscription (in-process ChangeFeed or a PollingFeed).
"""
import asyncio
import threading
from typing import Callable, Dict, List, Optional

import httpx

from . import game
from .client import ApiError
from .device import DeviceStorage, PLAYER_ID, PLAYER_TOKEN
from .logging_utils import get_logger
from .realtime import PollingFeed

logger = get_logger("infinitequiz.match")

VIEW_LOADING = "loading"
VIEW_GAME = "game"
VIEW_WAITING = "waiting"
VIEW_LEADERBOARD = "leaderboard"
VIEW_LOBBY = "lobby"
VIEW_ERROR = "error"


def leaderboard_path(code: str) -> str:
    return f"/leaderboard/{code}"


def lobby_path(code: str) -> str:
    return f"/lobby/{code}"


class MultiplayerGame:
    def __init__(
        self,
        room_code: str,
        api,
        storage: Optional[DeviceStorage] = None,
        player_id: Optional[int] = None,
        player_token: Optional[str] = None,
        clock: Callable[[], int] = game.now_ms,
        rng=None,
        on_navigate: Optional[Callable[[str], None]] = None,
    ):
        self.room_code = room_code
        self.api = api
        self.storage = storage
        self.clock = clock
        self.rng = rng
        self.on_navigate = on_navigate
        self.player_id = player_id if player_id is not None else (storage.get(PLAYER_ID) if storage else None)
        self.player_token = player_token or (storage.get(PLAYER_TOKEN) if storage else None)

        self.view = VIEW_LOADING
        self.questions: List[dict] = []
        self.current_index = 0
        self.answers: Dict[str, str] = {}
        self.time_left = game.ROUND_SECONDS
        self.end_time: Optional[int] = None
        self.finished = False
        self.score: Optional[int] = None
        self.navigated_to: Optional[str] = None
        self._countdown_active = False

    @property
    def current_question(self) -> Optional[dict]:
        if self.view != VIEW_GAME or self.current_index >= len(self.questions):
            return None
        return self.questions[self.current_index]

    @property
    def countdown_active(self) -> bool:
        return self._countdown_active

    def load(self) -> str:
        """Fetch the shared questions and start time and set up the countdown.

        Always loads fresh from the server; a locally saved snapshot is
        never restored for multiplayer.
        """
        try:
            room = self.api.get_room(self.room_code)
        except (ApiError, httpx.HTTPError) as exc:
            logger.error("game_load_failed", extra={"room": self.room_code, "error": str(exc)})
            self.view = VIEW_ERROR
            return self.view

        now = self.clock()
        start = room.get("game_start_time")
        if start is not None:
            self.end_time = game.round_end_ms(start)
            self.time_left = game.remaining_seconds(start, now)
            if self.time_left == 0:
                logger.info("game_already_over", extra={"room": self.room_code})
                self._navigate_leaderboard()
                return self.view
        else:
            logger.warning("no_shared_start_time", extra={"room": self.room_code})
            self.end_time = now + game.ROUND_MS
            self.time_left = game.ROUND_SECONDS

        self.questions = game.shuffle_questions(room.get("questions") or [], rng=self.rng)
        self.view = VIEW_GAME
        self._countdown_active = True
        logger.debug("game_loaded", extra={"room": self.room_code, "remaining": self.time_left,
                                           "count": len(self.questions)})
        return self.view

    def tick(self) -> int:
        """One countdown step; remaining time always comes from the end time."""
        if not self._countdown_active:
            return self.time_left
        self.time_left = game.seconds_until(self.end_time, self.clock())
        if self.time_left <= 0:
            self._countdown_active = False
            self._navigate_leaderboard()
        return self.time_left

    async def run(self, interval: float = 1.0) -> None:
        while self._countdown_active:
            await asyncio.sleep(interval)
            self.tick()

    def close(self) -> None:
        self._countdown_active = False

    def answer(self, question_id: str, letter: str) -> bool:
        """Record an answer and move on; the last answer finishes the game."""
        if self.view != VIEW_GAME or self.finished:
            return False
        self.answers[question_id] = letter
        if self.current_index + 1 < len(self.questions):
            self.current_index += 1
        else:
            self.finish()
        return True

    def finish(self) -> Optional[int]:
        if self.finished:
            return self.score
        self.finished = True
        self.score = game.tally_score(self.questions, self.answers)
        remaining = game.seconds_until(self.end_time, self.clock()) if self.end_time else self.time_left
        time_taken = game.elapsed_seconds(remaining) * 1000

        if self.player_id is not None:
            try:
                self.api.submit_result(self.player_id, self.player_token, self.score, time_taken)
            except (ApiError, httpx.HTTPError) as exc:
                logger.error("result_submit_failed", extra={"room": self.room_code, "player_id": self.player_id,
                                                            "error": str(exc)})
        else:
            logger.warning("result_not_submitted", extra={"room": self.room_code, "score": self.score})

        if self.storage is not None:
            self.storage.clear_snapshot(self.room_code)
        # the countdown keeps running; only it moves us to the leaderboard
        if self.view == VIEW_GAME:
            self.view = VIEW_WAITING
        return self.score

    def _navigate_leaderboard(self) -> None:
        if self.navigated_to is not None:
            return
        self.view = VIEW_LEADERBOARD
        self.navigated_to = leaderboard_path(self.room_code)
        if self.on_navigate:
            self.on_navigate(self.navigated_to)


class LeaderboardView:
    def __init__(self, room_code: str, api, feed=None, on_navigate: Optional[Callable[[str], None]] = None):
        self.room_code = room_code
        self.api = api
        self.feed = feed
        self.on_navigate = on_navigate
        self.standings: List[dict] = []
        self.loading = True
        self.reloads = 0
        self._sub = None
        self._lock = threading.Lock()

    def mount(self) -> List[dict]:
        self.reload()
        if self.feed is not None:
            self._sub = self.feed.subscribe("players", {"room_code": self.room_code}, self._on_change)
        return self.standings

    def unmount(self) -> None:
        if self._sub is not None:
            self._sub.close()
            self._sub = None

    def reload(self) -> List[dict]:
        try:
            rows = self.api.leaderboard(self.room_code)
        except (ApiError, httpx.HTTPError) as exc:
            logger.warning("leaderboard_load_failed", extra={"room": self.room_code, "error": str(exc)})
            rows = []
        with self._lock:
            self.standings = rows or []
            self.loading = False
            self.reloads += 1
        return self.standings

    def _on_change(self, change: dict) -> None:
        self.reload()

    def rematch(self) -> str:
        self.api.rematch(self.room_code)
        path = lobby_path(self.room_code)
        if self.on_navigate:
            self.on_navigate(path)
        return path


def polling_feed(api, interval: float = 2.0) -> PollingFeed:
    """PollingFeed that watches a room's standings through the HTTP API."""
    return PollingFeed(lambda table, filters: api.leaderboard(filters["room_code"]), interval=interval)

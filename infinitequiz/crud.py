import hashlib
import hmac
import json
from datetime import datetime, timezone
from typing import List, Optional, Tuple

from sqlalchemy import update as sa_update
from sqlmodel import Session, select

from . import models, game
from .cache import get_cached_leaderboard, cache_leaderboard, invalidate_leaderboard_cache, leaderboard_version
from .config import settings
from .logging_utils import get_logger
from .realtime import get_feed, INSERT, UPDATE

logger = get_logger("infinitequiz.crud")

engine = None


class RoomStateError(Exception):
    """The room is not in a state that allows the requested change."""


def _sign(value: str) -> str:
    return hmac.new(settings.SESSION_SECRET.encode(), value.encode(), hashlib.sha256).hexdigest()


def sign_player_token(session: Session, pid: int) -> Optional[str]:
    """Sign a player id so only its own client can write the row.

    Returns "pid.sig", or None when the player doesn't exist.
    """
    if pid is None or session.get(models.Player, pid) is None:
        return None
    val = str(pid)
    return f"{val}.{_sign(val)}"


def verify_player_token(session: Session, token: str) -> Optional[int]:
    try:
        pid_s, sig = token.rsplit('.', 1)
        pid = int(pid_s)
    except (AttributeError, ValueError):
        return None
    if not hmac.compare_digest(_sign(pid_s), sig):
        return None
    if session.get(models.Player, pid) is None:
        return None
    return pid


def player_to_dict(p: models.Player) -> dict:
    return {
        'id': p.id,
        'room_code': p.room_code,
        'name': p.name,
        'score': p.score,
        'time_taken': p.time_taken,
        'status': p.status,
    }


def room_questions(room: models.Room) -> list:
    if not room.questions_json:
        return []
    try:
        data = json.loads(room.questions_json)
    except ValueError:
        return []
    return data if isinstance(data, list) else []


def room_to_dict(room: models.Room) -> dict:
    return {
        'code': room.code,
        'status': room.status,
        'questions': room_questions(room) or None,
        'game_start_time': room.game_start_time,
    }


def _notify_player(p: models.Player, event: str = UPDATE) -> None:
    invalidate_leaderboard_cache(p.room_code)
    get_feed().publish("players", event, new=player_to_dict(p))


def upsert_user(session: Session, device_id: str, username: str) -> models.User:
    user = session.exec(select(models.User).where(models.User.device_id == device_id)).first()
    if user is None:
        user = models.User(device_id=device_id, username=username)
    user.username = username
    user.updated_at = datetime.now(timezone.utc)
    session.add(user)
    session.commit()
    session.refresh(user)
    return user


def get_room(session: Session, code: str) -> Optional[models.Room]:
    return session.exec(select(models.Room).where(models.Room.code == code)).first()


def list_players(session: Session, code: str) -> List[models.Player]:
    return list(session.exec(
        select(models.Player).where(models.Player.room_code == code).order_by(models.Player.id)
    ).all())


def create_room(session: Session, host_name: str, device_id: Optional[str] = None) -> Tuple[models.Room, models.Player]:
    code = game.generate_room_code()
    # codes are random; retry on the rare collision
    for _ in range(10):
        if get_room(session, code) is None:
            break
        code = game.generate_room_code()
    else:
        raise RoomStateError("could not allocate a room code")
    room = models.Room(code=code, status="waiting", created_at=datetime.now(timezone.utc))
    session.add(room)
    session.commit()
    session.refresh(room)
    host = add_player(session, code, host_name, device_id)
    logger.info("room_created", extra={"room": code})
    return room, host


def add_player(session: Session, code: str, name: str, device_id: Optional[str] = None) -> models.Player:
    room = get_room(session, code)
    if room is None:
        raise LookupError(code)
    if room.status != "waiting":
        raise RoomStateError(f"room {code} is {room.status}")
    p = models.Player(
        room_code=code,
        name=name,
        device_id=device_id,
        joined_at=datetime.now(timezone.utc),
    )
    session.add(p)
    session.commit()
    session.refresh(p)
    _notify_player(p, INSERT)
    logger.info("player_joined", extra={"room": code, "player_id": p.id})
    return p


def start_game(session: Session, code: str, questions: list, now: Optional[int] = None) -> Tuple[models.Room, bool]:
    """Store the question set and shared start time for a waiting room.

    First writer wins: the update only applies while the room is still
    waiting. Returns (room, started) where started is False if another client
    already started the match; the room then carries the stored values.
    """
    if get_room(session, code) is None:
        raise LookupError(code)
    start = now if now is not None else game.now_ms()
    result = session.execute(
        sa_update(models.Room)
        .where(models.Room.code == code)
        .where(models.Room.status == "waiting")
        .values(status="active", questions_json=json.dumps(questions), game_start_time=start)
        .execution_options(synchronize_session=False)
    )
    started = result.rowcount == 1
    if started:
        session.execute(
            sa_update(models.Player)
            .where(models.Player.room_code == code)
            .values(status="playing", score=0, time_taken=None)
            .execution_options(synchronize_session=False)
        )
    session.commit()
    session.expire_all()
    room = get_room(session, code)
    if started:
        for p in list_players(session, code):
            _notify_player(p)
        logger.info("game_started", extra={"room": code, "count": len(questions)})
    else:
        logger.info("game_start_ignored", extra={"room": code, "status": room.status})
    return room, started


def mark_ended_if_expired(session: Session, room: models.Room, now: Optional[int] = None) -> models.Room:
    if room.status != "active" or room.game_start_time is None:
        return room
    now = now if now is not None else game.now_ms()
    if game.remaining_seconds(room.game_start_time, now) > 0:
        return room
    room.status = "ended"
    session.add(room)
    session.commit()
    session.refresh(room)
    logger.info("game_ended", extra={"room": room.code})
    return room


def record_result(session: Session, player_id: int, score: Optional[int] = None,
                  time_taken: Optional[int] = None, status: str = "finished") -> Optional[models.Player]:
    """Write a player's own result.

    Only accepted while the room has a match in progress or just ended; a
    late write after a rematch raises RoomStateError.
    """
    p = session.get(models.Player, player_id)
    if p is None:
        return None
    room = get_room(session, p.room_code)
    if room is None or room.status not in ("active", "ended"):
        logger.info("result_rejected", extra={"room": p.room_code, "player_id": p.id,
                                             "status": room.status if room else None})
        raise RoomStateError("room has no match in progress")
    if score is not None:
        p.score = int(score)
    if time_taken is not None:
        p.time_taken = int(time_taken)
    p.status = status
    session.add(p)
    session.commit()
    session.refresh(p)
    _notify_player(p)
    logger.info("player_finished" if status == "finished" else "player_updated",
                extra={"room": p.room_code, "player_id": p.id, "score": p.score, "time_taken": p.time_taken})
    return p


def get_leaderboard(session: Session, code: str, use_cache: bool = True) -> List[dict]:
    """Standings for a room: score desc, time_taken asc with missing times
    last, player id as the final tiebreak."""
    if use_cache:
        cached = get_cached_leaderboard(code)
        if cached is not None:
            return cached
    version = leaderboard_version(code)
    rows = [player_to_dict(p) for p in list_players(session, code)]
    rows.sort(key=game.leaderboard_key)
    cache_leaderboard(code, rows, version=version)
    return rows


def rematch(session: Session, code: str) -> models.Room:
    """Reset every player and the room back to the lobby.

    Idempotent: repeating it leaves the same state.
    """
    room = get_room(session, code)
    if room is None:
        raise LookupError(code)
    session.execute(
        sa_update(models.Player)
        .where(models.Player.room_code == code)
        .values(score=0, time_taken=None, status="joined")
        .execution_options(synchronize_session=False)
    )
    room.status = "waiting"
    room.questions_json = None
    room.game_start_time = None
    session.add(room)
    session.commit()
    session.expire_all()
    for p in list_players(session, code):
        _notify_player(p)
    room = get_room(session, code)
    logger.info("rematch", extra={"room": code})
    return room

from fastapi import FastAPI, Depends, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, field_validator
from sqlmodel import Session
from sqlmodel import Session as SQLSession
from starlette.middleware.base import BaseHTTPMiddleware
from typing import List, Literal, Optional

import asyncio
import json
import logging
import time
import uuid

from . import crud, game, models, quizgen
from .config import settings
from .deps import get_session, get_change_feed
from .logging_utils import setup_logging, get_logger, request_id_ctx
from .realtime import ChangeFeed


# Rate limiting - store last request times per IP
_RATE_LIMIT_STORE: dict = {}


def check_rate_limit(request: Request, max_requests: int = 30, window_seconds: int = 60) -> bool:
    """
    Simple in-memory rate limiting. Returns True if request is allowed, False if rate limited.
    """
    client_ip = request.client.host if request.client else "unknown"
    current_time = time.time()

    cutoff_time = current_time - window_seconds
    _RATE_LIMIT_STORE[client_ip] = [
        req_time for req_time in _RATE_LIMIT_STORE.get(client_ip, [])
        if req_time > cutoff_time
    ]

    if len(_RATE_LIMIT_STORE[client_ip]) >= max_requests:
        return False

    _RATE_LIMIT_STORE[client_ip].append(current_time)
    return True


def rate_limit_dependency(max_requests: int = 30, window_seconds: int = 60):
    """Create a dependency function that raises HTTP 429 if rate limited"""
    def dependency(request: Request):
        if not check_rate_limit(request, max_requests, window_seconds):
            raise HTTPException(
                status_code=429,
                detail=f"Rate limit exceeded. Maximum {max_requests} requests per {window_seconds} seconds."
            )
    return dependency


# live leaderboard sockets -> metadata {'room': code}
_WS_CONNECTIONS: dict = {}


def _load_standings(code: str) -> list:
    with SQLSession(crud.engine) as s:
        return crud.get_leaderboard(s, code)


def _prepare_message(e: dict):
    """Serialize event to JSON."""
    try:
        return json.dumps(e)
    except (TypeError, ValueError):
        return None


async def _send_standings(ws: WebSocket, code: str, event: str) -> bool:
    """Reload the room's standings and push them. Return False if the send failed."""
    try:
        standings = _load_standings(code)
    except Exception as exc:
        logger.warning("standings_load_failed", extra={"room": code, "error": str(exc)})
        return True
    msg = _prepare_message({"type": "leaderboard", "room": code, "event": event, "standings": standings})
    if msg is None:
        return True
    try:
        await ws.send_text(msg)
        return True
    except Exception as send_exc:
        logger.debug("ws_send_error", extra={"room": code, "error": str(send_exc)})
        return False


async def _pump_changes(ws: WebSocket, code: str, changes: asyncio.Queue) -> None:
    # every change triggers a full reload, never an incremental patch
    while True:
        change = await changes.get()
        if not await _send_standings(ws, code, change.get("event")):
            return


setup_logging(logging.INFO)
logger = get_logger("infinitequiz")
app = FastAPI(title="Infinite Quiz")


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request, call_next):
        response = await call_next(request)
        response.headers.setdefault('Referrer-Policy', 'strict-origin-when-cross-origin')
        response.headers.setdefault('X-Content-Type-Options', 'nosniff')
        response.headers.setdefault('X-Frame-Options', 'DENY')
        return response


app.add_middleware(SecurityHeadersMiddleware)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        rid = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        token = request_id_ctx.set(rid)
        start = time.time()
        client = request.client.host if request.client else "-"
        ua = request.headers.get("user-agent", "-")
        response = None
        try:
            response = await call_next(request)
            return response
        except Exception:
            logger.exception(
                "request_error",
                extra={"path": str(request.url), "method": request.method},
            )
            raise
        finally:
            duration_ms = int((time.time() - start) * 1000)
            status = getattr(response, "status_code", 500)
            logger.info(
                "request",
                extra={
                    "method": request.method,
                    "path": request.url.path,
                    "status": status,
                    "duration_ms": duration_ms,
                    "client": client,
                    "user_agent": ua,
                },
            )
            if response is not None:
                response.headers["X-Request-ID"] = rid
            request_id_ctx.reset(token)


app.add_middleware(RequestLoggingMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "OPTIONS"],
    allow_headers=["Accept", "Content-Type", "Authorization", "X-Request-ID"],
)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = jsonable_encoder(exc.errors())
    logger.warning("validation_error", extra={"method": request.method, "url": str(request.url), "errors": errors})
    return JSONResponse(
        status_code=422,
        content={
            "detail": errors,
            "message": "Input validation failed"
        }
    )


@app.get("/health", include_in_schema=False)
def health():
    return JSONResponse({"status": "ok"})


@app.get("/api/cache/stats", include_in_schema=False)
def cache_stats():
    from .cache import get_cache
    return JSONResponse({"cache_stats": get_cache().get_stats(), "status": "ok"})


@app.on_event("startup")
def on_startup():
    from .init_db import init_db
    from .migrations import run_migrations

    if crud.engine is None:
        crud.engine = init_db()
    try:
        run_migrations(crud.engine)
    except Exception as e:
        logger.warning("migrations_failed", extra={"error": str(e)})


def _clean_name(v: str) -> str:
    v = (v or "").strip()
    if not v:
        raise ValueError('Name cannot be empty')
    if len(v) > 20:
        raise ValueError('Name too long (max 20 characters)')
    return v


class UserUpsert(BaseModel):
    device_id: str = Field(..., min_length=1, max_length=64)
    username: str = Field(..., max_length=64)

    @field_validator('username')
    @classmethod
    def validate_username(cls, v):
        return _clean_name(v)


class RoomJoinRequest(BaseModel):
    name: str = Field(..., max_length=64)
    device_id: Optional[str] = Field(None, max_length=64)

    @field_validator('name')
    @classmethod
    def validate_name(cls, v):
        return _clean_name(v)


class StartGameRequest(BaseModel):
    questions: Optional[List[models.Question]] = None
    category: Optional[str] = Field(None, max_length=64)
    difficulty: Optional[str] = Field(None, max_length=16)

    @field_validator('questions')
    @classmethod
    def validate_questions(cls, v):
        if v is None:
            return v
        if not v:
            raise ValueError('questions cannot be empty')
        for q in v:
            if len(q.options) != len(game.ANSWER_LETTERS):
                raise ValueError('Each question needs exactly 4 options')
            if q.correct_answer not in game.ANSWER_LETTERS:
                raise ValueError('correct_answer must be one of A, B, C, D')
        return v


class PlayerResultRequest(BaseModel):
    score: Optional[int] = Field(None, ge=0, le=1000)
    time_taken: Optional[int] = Field(None, ge=0, le=game.ROUND_MS)
    status: Literal["joined", "playing", "finished"] = "finished"
    player_token: Optional[str] = Field(None, max_length=200)


class QuizRequest(BaseModel):
    category: Optional[str] = Field(None, max_length=64)
    difficulty: Optional[str] = Field(None, max_length=16)


def _room_or_404(session: Session, code: str) -> models.Room:
    room = crud.get_room(session, code.upper())
    if room is None:
        raise HTTPException(status_code=404, detail="room not found")
    return room


def _room_payload(session: Session, room: models.Room) -> dict:
    payload = crud.room_to_dict(room)
    payload["players"] = [crud.player_to_dict(p) for p in crud.list_players(session, room.code)]
    # lets clients estimate their clock offset against the shared start time
    payload["server_time"] = game.now_ms()
    return payload


def _joined_payload(session: Session, room: models.Room, player: models.Player) -> dict:
    return {
        "room": crud.room_to_dict(room),
        "player": crud.player_to_dict(player),
        "player_token": crud.sign_player_token(session, player.id),
    }


def _bearer_token(request: Request) -> Optional[str]:
    auth = request.headers.get('authorization')
    if auth and auth.lower().startswith('bearer '):
        return auth.split(' ', 1)[1].strip()
    return None


@app.post("/api/users")
def upsert_user(body: UserUpsert, session: Session = Depends(get_session)):
    user = crud.upsert_user(session, body.device_id, body.username)
    return {
        "id": user.id,
        "device_id": user.device_id,
        "username": user.username,
        "updated_at": user.updated_at.isoformat() if user.updated_at else None,
    }


@app.post("/api/rooms", status_code=201)
def create_room(
    body: RoomJoinRequest,
    session: Session = Depends(get_session),
    _: None = Depends(rate_limit_dependency(max_requests=20, window_seconds=60))
):
    try:
        room, host = crud.create_room(session, body.name, body.device_id)
    except crud.RoomStateError as exc:
        raise HTTPException(status_code=503, detail=str(exc))
    return _joined_payload(session, room, host)


@app.post("/api/rooms/{code}/join", status_code=201)
def join_room(code: str, body: RoomJoinRequest, session: Session = Depends(get_session)):
    room = _room_or_404(session, code)
    try:
        player = crud.add_player(session, room.code, body.name, body.device_id)
    except crud.RoomStateError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return _joined_payload(session, room, player)


@app.get("/api/rooms/{code}")
def get_room(code: str, session: Session = Depends(get_session)):
    room = crud.mark_ended_if_expired(session, _room_or_404(session, code))
    return _room_payload(session, room)


@app.post("/api/rooms/{code}/start")
def start_game(code: str, body: StartGameRequest, session: Session = Depends(get_session)):
    room = _room_or_404(session, code)
    if room.status != "waiting":
        # someone already started this match; hand back what is stored
        payload = _room_payload(session, room)
        payload["started"] = False
        return payload

    if body.questions is not None:
        questions = [q.model_dump() for q in body.questions]
    else:
        try:
            quiz = quizgen.generate_quiz(body.category, body.difficulty)
        except quizgen.QuizGenerationError as exc:
            logger.error("quiz_generation_failed", extra={"room": room.code, "error": str(exc)})
            return JSONResponse(status_code=500, content=quizgen.error_payload(exc))
        questions = quiz["questions"]

    room, started = crud.start_game(session, room.code, questions)
    payload = _room_payload(session, room)
    payload["started"] = started
    return payload


@app.patch("/api/players/{player_id}")
def update_player(
    player_id: int,
    body: PlayerResultRequest,
    request: Request,
    session: Session = Depends(get_session),
):
    if session.get(models.Player, player_id) is None:
        raise HTTPException(status_code=404, detail="player not found")
    token = _bearer_token(request) or body.player_token
    if not token:
        raise HTTPException(status_code=401, detail="missing player token")
    if crud.verify_player_token(session, token) != player_id:
        raise HTTPException(status_code=403, detail="not this player's token")
    try:
        p = crud.record_result(session, player_id, body.score, body.time_taken, body.status)
    except crud.RoomStateError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return crud.player_to_dict(p)


@app.get("/api/rooms/{code}/leaderboard")
def leaderboard(code: str, session: Session = Depends(get_session)):
    room = _room_or_404(session, code)
    return {"room": room.code, "standings": crud.get_leaderboard(session, room.code)}


@app.post("/api/rooms/{code}/rematch")
def rematch(code: str, session: Session = Depends(get_session)):
    room = crud.rematch(session, _room_or_404(session, code).code)
    return _room_payload(session, room)


@app.post("/api/quiz")
def generate_quiz(
    body: QuizRequest,
    _: None = Depends(rate_limit_dependency(max_requests=10, window_seconds=60))
):
    try:
        return quizgen.generate_quiz(body.category, body.difficulty)
    except quizgen.QuizGenerationError as exc:
        logger.error("quiz_generation_failed", extra={"category": body.category, "error": str(exc)})
        return JSONResponse(status_code=500, content=quizgen.error_payload(exc))


@app.websocket("/ws/rooms/{code}")
async def leaderboard_socket(ws: WebSocket, code: str, feed: ChangeFeed = Depends(get_change_feed)):
    await ws.accept()
    code = code.upper()
    loop = asyncio.get_running_loop()
    changes: asyncio.Queue = asyncio.Queue()
    # change callbacks run on whichever thread did the write
    sub = feed.subscribe("players", {"room_code": code}, lambda change: loop.call_soon_threadsafe(changes.put_nowait, change))
    _WS_CONNECTIONS[ws] = {'room': code}
    logger.debug("ws_connected", extra={"room": code, "ws_count": len(_WS_CONNECTIONS)})
    pump = None
    try:
        await _send_standings(ws, code, "SNAPSHOT")
        pump = asyncio.create_task(_pump_changes(ws, code, changes))
        while True:
            await ws.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        sub.close()
        if pump is not None:
            pump.cancel()
        _WS_CONNECTIONS.pop(ws, None)

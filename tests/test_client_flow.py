from fastapi.testclient import TestClient
from sqlmodel import SQLModel, create_engine
import pytest

from infinitequiz import crud, game
from infinitequiz.client import QuizApiClient, ApiError
from infinitequiz.device import DeviceStorage, save_username
from infinitequiz.main import app
from infinitequiz.match import MultiplayerGame, LeaderboardView, polling_feed, VIEW_WAITING, VIEW_LEADERBOARD

T = 1_700_000_000_000


def setup_db(tmp_path):
    db = tmp_path / 'flow.db'
    engine = create_engine(f'sqlite:///{db}', connect_args={"check_same_thread": False})
    SQLModel.metadata.create_all(engine)
    crud.engine = engine


def test_api_errors_carry_status(tmp_path):
    setup_db(tmp_path)
    api = QuizApiClient(http=TestClient(app))
    with pytest.raises(ApiError) as err:
        api.get_room("NOPE00")
    assert err.value.status == 404
    assert err.value.detail == "room not found"


def test_two_players_full_match(tmp_path, sample_questions, monkeypatch):
    setup_db(tmp_path)
    server_now = [T]
    monkeypatch.setattr(game, "now_ms", lambda: server_now[0])
    api = QuizApiClient(http=TestClient(app))

    alice_store = DeviceStorage(tmp_path / "alice.json")
    bob_store = DeviceStorage(tmp_path / "bob.json")
    save_username(api, alice_store, "alice")
    save_username(api, bob_store, "bob")

    host = api.create_room("alice", alice_store.device_id)
    code = host["room"]["code"]
    alice_store.remember_player(host["player"], host["player_token"])
    guest = api.join_room(code, "bob", bob_store.device_id)
    bob_store.remember_player(guest["player"], guest["player_token"])

    assert api.start_game(code, questions=sample_questions)["started"] is True

    board = LeaderboardView(code, api)
    board.mount()
    feed = polling_feed(api)
    feed.subscribe("players", {"room_code": code}, board._on_change)

    clock = [T + 8000]
    alice = MultiplayerGame(code, api, storage=alice_store, clock=lambda: clock[0])
    bob = MultiplayerGame(code, api, storage=bob_store, clock=lambda: clock[0])
    alice.load()
    bob.load()
    assert alice.time_left == bob.time_left == 37

    for q in list(alice.questions):
        alice.answer(q["id"], q["correct_answer"])
    assert alice.view == VIEW_WAITING

    assert feed.poll_once() == 1
    assert board.standings[0]["name"] == "alice"
    assert board.standings[0]["score"] == len(sample_questions)
    assert board.standings[0]["time_taken"] == 8000

    clock[0] = T + 20000
    for q in list(bob.questions)[:2]:
        bob.answer(q["id"], q["correct_answer"])
    bob.finish()
    feed.poll_once()
    assert [s["name"] for s in board.standings] == ["alice", "bob"]
    assert board.standings[1]["time_taken"] == 20000

    clock[0] = T + 45000
    alice.tick()
    bob.tick()
    assert alice.view == bob.view == VIEW_LEADERBOARD

    board.rematch()
    room = api.get_room(code)
    assert room["status"] == "waiting" and room["game_start_time"] is None
    assert {p["status"] for p in room["players"]} == {"joined"}


def test_generate_quiz_via_client(tmp_path):
    setup_db(tmp_path)
    api = QuizApiClient(http=TestClient(app))
    quiz = api.generate_quiz("ARD", "easy")
    assert len(quiz["questions"]) == 10

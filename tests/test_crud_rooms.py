import pytest
from sqlmodel import SQLModel, create_engine, Session
from infinitequiz import crud, game, models
from infinitequiz.realtime import get_feed

T = 1_700_000_000_000


def setup_db(tmp_path):
    db = tmp_path / 'rooms.db'
    engine = create_engine(f'sqlite:///{db}', connect_args={"check_same_thread": False})
    SQLModel.metadata.create_all(engine)
    crud.engine = engine
    return engine


def test_create_room_adds_host(tmp_path):
    engine = setup_db(tmp_path)
    with Session(engine) as s:
        room, host = crud.create_room(s, "alice", device_id="dev-1")
        assert room.status == "waiting"
        assert len(room.code) == game.ROOM_CODE_LENGTH
        assert host.room_code == room.code and host.status == "joined"
        assert host.score == 0 and host.time_taken is None


def test_join_rules(tmp_path):
    engine = setup_db(tmp_path)
    with Session(engine) as s:
        room, _ = crud.create_room(s, "alice")
        bob = crud.add_player(s, room.code, "bob")
        assert [p.name for p in crud.list_players(s, room.code)] == ["alice", "bob"]
        with pytest.raises(LookupError):
            crud.add_player(s, "NOPE00", "carol")
        crud.start_game(s, room.code, [{"id": "q1"}], now=T)
        with pytest.raises(crud.RoomStateError):
            crud.add_player(s, room.code, "late")
        assert bob.id is not None


def test_start_game_first_writer_wins(tmp_path, sample_questions):
    engine = setup_db(tmp_path)
    with Session(engine) as s:
        room, _ = crud.create_room(s, "alice")
        crud.add_player(s, room.code, "bob")
        first, started = crud.start_game(s, room.code, sample_questions, now=T)
        assert started is True
        assert first.status == "active" and first.game_start_time == T
        assert crud.room_questions(first) == sample_questions
        assert {p.status for p in crud.list_players(s, room.code)} == {"playing"}

        second, started2 = crud.start_game(s, room.code, [{"id": "other"}], now=T + 5000)
        assert started2 is False
        assert second.game_start_time == T
        assert crud.room_questions(second) == sample_questions


def test_start_unknown_room(tmp_path):
    engine = setup_db(tmp_path)
    with Session(engine) as s:
        with pytest.raises(LookupError):
            crud.start_game(s, "NOPE00", [])


def test_mark_ended_if_expired(tmp_path):
    engine = setup_db(tmp_path)
    with Session(engine) as s:
        room, _ = crud.create_room(s, "alice")
        room, _ = crud.start_game(s, room.code, [{"id": "q1"}], now=T)
        assert crud.mark_ended_if_expired(s, room, now=T + 10000).status == "active"
        assert crud.mark_ended_if_expired(s, room, now=T + 46000).status == "ended"


def test_record_result_and_rematch(tmp_path, sample_questions):
    engine = setup_db(tmp_path)
    with Session(engine) as s:
        room, host = crud.create_room(s, "alice")
        crud.start_game(s, room.code, sample_questions, now=T)
        p = crud.record_result(s, host.id, score=4, time_taken=21000)
        assert (p.score, p.time_taken, p.status) == (4, 21000, "finished")
        assert crud.record_result(s, 9999, score=1) is None

        room = crud.rematch(s, room.code)
        assert room.status == "waiting"
        assert room.questions_json is None and room.game_start_time is None
        players = crud.list_players(s, room.code)
        assert all((x.score, x.time_taken, x.status) == (0, None, "joined") for x in players)

        # a second rematch converges on the same state
        again = crud.rematch(s, room.code)
        assert again.status == "waiting" and again.game_start_time is None


def test_player_writes_publish_changes(tmp_path, sample_questions):
    engine = setup_db(tmp_path)
    seen = []
    with Session(engine) as s:
        room, host = crud.create_room(s, "alice")
        get_feed().subscribe("players", {"room_code": room.code}, seen.append)
        crud.add_player(s, room.code, "bob")
        crud.start_game(s, room.code, sample_questions, now=T)
        crud.record_result(s, host.id, score=1, time_taken=1000)
    assert [c["event"] for c in seen] == ["INSERT", "UPDATE", "UPDATE", "UPDATE"]
    assert seen[-1]["new"]["status"] == "finished"


def test_upsert_user_by_device(tmp_path):
    engine = setup_db(tmp_path)
    with Session(engine) as s:
        u1 = crud.upsert_user(s, "device-1", "alice")
        u2 = crud.upsert_user(s, "device-1", "alice2")
        assert u1.id == u2.id
        assert u2.username == "alice2"
        assert u2.updated_at is not None
        u3 = crud.upsert_user(s, "device-2", "bob")
        assert u3.id != u1.id


def test_player_token_sign_and_verify(tmp_path):
    engine = setup_db(tmp_path)
    with Session(engine) as s:
        _, host = crud.create_room(s, "alice")
        token = crud.sign_player_token(s, host.id)
        assert token and "." in token
        assert crud.verify_player_token(s, token) == host.id

        pid_s, _ = token.split('.')
        assert crud.verify_player_token(s, pid_s + '.deadbeef') is None
        assert crud.verify_player_token(s, "garbage") is None
        assert crud.sign_player_token(s, 424242) is None
        s.delete(s.get(models.Player, host.id))
        s.commit()
        assert crud.verify_player_token(s, token) is None


def test_late_result_after_rematch_is_rejected(tmp_path, sample_questions):
    engine = setup_db(tmp_path)
    with Session(engine) as s:
        room, host = crud.create_room(s, "alice")
        with pytest.raises(crud.RoomStateError):
            crud.record_result(s, host.id, score=3, time_taken=9000)

        crud.start_game(s, room.code, sample_questions, now=T)
        crud.rematch(s, room.code)
        with pytest.raises(crud.RoomStateError):
            crud.record_result(s, host.id, score=3, time_taken=9000)
        s.expire_all()
        p = s.get(models.Player, host.id)
        assert (p.score, p.time_taken, p.status) == (0, None, "joined")

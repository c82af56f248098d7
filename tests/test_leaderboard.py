from sqlmodel import SQLModel, create_engine, Session
from infinitequiz import crud, models


def setup_db(tmp_path):
    db = tmp_path / 'lb.db'
    engine = create_engine(f'sqlite:///{db}', connect_args={"check_same_thread": False})
    SQLModel.metadata.create_all(engine)
    crud.engine = engine
    return engine


def _player(s, name, score, time_taken, status="finished"):
    p = models.Player(room_code="ROOM01", name=name, score=score, time_taken=time_taken, status=status)
    s.add(p)
    s.commit()
    s.refresh(p)
    return p


def test_leaderboard_ordering(tmp_path):
    engine = setup_db(tmp_path)
    with Session(engine) as s:
        s.add(models.Room(code="ROOM01", status="active"))
        s.commit()
        _player(s, "slow", 8, 40000)
        _player(s, "unfinished", 8, None, status="playing")
        _player(s, "fast", 8, 12000)
        _player(s, "best", 10, 44000)
        _player(s, "zero", 0, 5000)

        names = [r["name"] for r in crud.get_leaderboard(s, "ROOM01")]
        assert names == ["best", "fast", "slow", "unfinished", "zero"]


def test_leaderboard_only_includes_room_players(tmp_path):
    engine = setup_db(tmp_path)
    with Session(engine) as s:
        _player(s, "here", 1, 1000)
        other = models.Player(room_code="OTHER1", name="elsewhere", score=9)
        s.add(other)
        s.commit()
        rows = crud.get_leaderboard(s, "ROOM01")
        assert [r["name"] for r in rows] == ["here"]


def test_leaderboard_cache_invalidated_by_result(tmp_path):
    engine = setup_db(tmp_path)
    with Session(engine) as s:
        s.add(models.Room(code="ROOM01", status="active"))
        s.commit()
        a = _player(s, "a", 1, 10000)
        _player(s, "b", 2, 10000)
        assert crud.get_leaderboard(s, "ROOM01")[0]["name"] == "b"
        crud.record_result(s, a.id, score=5, time_taken=9000)
        assert crud.get_leaderboard(s, "ROOM01")[0]["name"] == "a"


def test_result_written_during_read_is_not_hidden_by_cache(tmp_path, monkeypatch):
    engine = setup_db(tmp_path)
    with Session(engine) as s:
        s.add(models.Room(code="ROOM01", status="active"))
        s.commit()
        a = _player(s, "a", 0, None, status="playing")

        read_players = crud.list_players
        written = []

        def list_then_finish(session, code):
            rows = read_players(session, code)
            if not written:
                # another request finishes between the read and the cache fill
                with Session(engine) as other:
                    crud.record_result(other, a.id, score=7, time_taken=5000)
                written.append(True)
            return rows

        monkeypatch.setattr(crud, "list_players", list_then_finish)
        assert crud.get_leaderboard(s, "ROOM01")[0]["score"] == 0
        monkeypatch.setattr(crud, "list_players", read_players)

        s.expire_all()
        assert crud.get_leaderboard(s, "ROOM01")[0]["score"] == 7

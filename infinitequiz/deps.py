from sqlmodel import Session
from . import crud
from .realtime import get_feed, ChangeFeed


def get_session():
    # one session per request, bound to the engine created at startup
    with Session(crud.engine) as session:
        yield session


def get_change_feed() -> ChangeFeed:
    return get_feed()

from typing import List, Optional
from datetime import datetime

from pydantic import BaseModel
from sqlalchemy import BigInteger, Column
from sqlmodel import SQLModel, Field


class Room(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    code: str = Field(index=True, unique=True)
    status: str = "waiting"  # waiting | active | ended
    questions_json: Optional[str] = None
    # epoch milliseconds; authoritative start of the round for every client
    game_start_time: Optional[int] = Field(default=None, sa_column=Column(BigInteger, nullable=True))
    created_at: Optional[datetime] = None


class Player(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    room_code: str = Field(index=True)
    name: str
    score: int = 0
    time_taken: Optional[int] = None  # milliseconds
    status: str = "joined"  # joined | playing | finished
    device_id: Optional[str] = None
    joined_at: Optional[datetime] = None


class User(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    device_id: str = Field(index=True, unique=True)
    username: str
    updated_at: Optional[datetime] = None


class Question(BaseModel):
    id: str
    category: str = ""
    difficulty: str = ""
    question: str
    options: List[str]
    correct_answer: str
    explanation: str = ""

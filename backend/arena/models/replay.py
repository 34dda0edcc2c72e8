"""
Replay session model
Maps to: replay_sessions table
"""
from datetime import datetime
from uuid import UUID, uuid4

from pydantic import model_validator
from sqlmodel import Field, SQLModel

from arena.core.clock import utcnow


class ReplaySession(SQLModel, table=True):
    """A user's replay window over historical candles of one asset"""
    __tablename__ = "replay_sessions"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    user_id: UUID = Field(index=True)
    asset_id: UUID = Field(foreign_key="assets.id")
    start_time: datetime
    end_time: datetime
    created_at: datetime = Field(default_factory=utcnow)


class ReplayCreate(SQLModel):
    """Replay creation request ("from"/"to" on the wire)"""
    asset_id: UUID
    start: datetime = Field(alias="from")
    end: datetime = Field(alias="to")

    @model_validator(mode="after")
    def check_window(self) -> "ReplayCreate":
        if self.start >= self.end:
            raise ValueError("'from' must be earlier than 'to'")
        return self


class ReplayCreateResponse(SQLModel):
    replay_id: UUID
    ws_url: str


class ReplayFrame(SQLModel):
    timestamp: datetime
    price: float

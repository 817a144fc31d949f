from typing import Optional

from pydantic import BaseModel

from stoodio.services.sessions import SessionState


class SessionOut(BaseModel):
    booking_id: int
    state: Optional[SessionState] = None


class EndSessionRequest(BaseModel):
    confirm: bool = False

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from .db import get_db
from .events import EventHub
from .redemption import RedemptionEngine


def get_hub(request: Request) -> EventHub:
    return request.app.state.hub


def get_engine(db: Session = Depends(get_db), hub: EventHub = Depends(get_hub)) -> RedemptionEngine:
    return RedemptionEngine(db, publisher=hub)

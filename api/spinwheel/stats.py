from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from .models import User, SpinCode, SpinLog, ACTIVE, USED
from .presence import PresenceTracker
from .schemas import KpiSnapshot


def _count(db: Session, model, *criteria) -> int:
    return db.scalar(select(func.count(model.id)).where(*criteria)) or 0


def compute_kpis(db: Session, presence: PresenceTracker) -> KpiSnapshot:
    """Dashboard counters. Everything but activeUsers is read from the database."""
    return KpiSnapshot(
        total_users=_count(db, User, or_(User.role.is_(None), User.role != "admin")),
        active_users=presence.count(),
        total_spins=_count(db, SpinLog),
        available_codes=_count(db, SpinCode, SpinCode.status == ACTIVE),
        used_codes=_count(db, SpinCode, SpinCode.status == USED),
    )

"""
Code redemption.

A code is consumed by exactly one conditional UPDATE::

    UPDATE spin_codes SET status='used', ...
     WHERE code=:code AND status='active'
       AND (expires_at IS NULL OR expires_at > :now)

The database applies it atomically per row, so out of any number of
concurrent requests for the same code exactly one sees ``rowcount == 1``.
Nothing is locked in-process and a failed match is never retried: the
follow-up read only explains *why* it failed.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.orm import Session

from .errors import (
    CodeNotFound,
    CodeNotRedeemable,
    InvalidRequest,
    RedemptionError,
    UserBlocked,
    UserNotFound,
)
from .events import ADMIN, Publisher
from .models import Prize, SpinCode, SpinLog, User, ACTIVE, DISABLED, EXPIRED, USED
from .utils import DEFAULT_PRIZES, PrizeCandidate, as_utc, select_weighted, utcnow

logger = logging.getLogger(__name__)


@dataclass
class RedemptionResult:
    """Outcome of a successful redemption."""
    winning_index: int
    prize: PrizeCandidate
    log: SpinLog
    success: bool = True

    @property
    def prize_id(self) -> int:
        # built-in prizes have no row id; number them by wheel position
        return self.prize.id if self.prize.id is not None else self.winning_index + 1


def normalize_code(code: str) -> str:
    return code.strip().upper()


def find_user(db: Session, username: str) -> User | None:
    return db.scalar(select(User).where(func.lower(User.username) == username.strip().lower()))


def load_candidates(db: Session) -> List[PrizeCandidate]:
    """Active prizes in wheel order, or the built-in table when none are configured."""
    rows = db.scalars(
        select(Prize).where(Prize.is_active.is_(True)).order_by(Prize.order.asc(), Prize.id.asc())
    ).all()
    if not rows:
        return list(DEFAULT_PRIZES)
    return [PrizeCandidate(id=p.id, name=p.name, color=p.color, probability=p.probability) for p in rows]


class RedemptionEngine:
    def __init__(
        self,
        db: Session,
        publisher: Optional[Publisher] = None,
        rng=None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.publisher = publisher
        self.rng = rng
        self.clock = clock

    def redeem(self, code: str | None, username: str | None) -> RedemptionResult:
        if not code or not code.strip():
            raise InvalidRequest("Code is required")
        if not username or not username.strip():
            raise InvalidRequest("User is required")

        normalized = normalize_code(code)
        user = find_user(self.db, username)
        if user is None:
            logger.info("Spin rejected, user not found: %r", username)
            raise UserNotFound()
        if user.is_blocked:
            raise UserBlocked()

        candidates = load_candidates(self.db)
        winning_index = select_weighted(candidates, self.rng)
        winner = candidates[winning_index]

        now = self.clock()
        if not self._consume(normalized, user, winner.name, now):
            error = self.diagnose(normalized, now)
            logger.info("Spin rejected for %s (%s): %s", normalized, user.username, error.message)
            raise error

        log = SpinLog(
            code=normalized,
            prize=winner.name,
            used_by=user.id,
            used_by_username=user.username,
            timestamp=now,
        )
        self.db.add(log)
        self.db.commit()
        self.db.refresh(log)
        logger.info("Code %s redeemed by %s: %s", normalized, user.username, winner.name)

        self._notify(log)
        return RedemptionResult(winning_index=winning_index, prize=winner, log=log)

    def _consume(self, code: str, user: User, prize_name: str, now: datetime) -> bool:
        stmt = (
            update(SpinCode)
            .where(
                SpinCode.code == code,
                SpinCode.status == ACTIVE,
                or_(SpinCode.expires_at.is_(None), SpinCode.expires_at > now),
            )
            .values(
                status=USED,
                used_by=user.id,
                used_by_username=user.username,
                used_at=now,
                prize=prize_name,
            )
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(stmt)
        if result.rowcount != 1:
            self.db.rollback()
            return False
        # committed on its own: the code stays used whatever happens next
        self.db.commit()
        return True

    def diagnose(self, code: str, now: datetime | None = None) -> RedemptionError:
        """Explain why ``code`` can't be redeemed. Advisory only."""
        now = now or self.clock()
        existing = self.db.scalar(select(SpinCode).where(SpinCode.code == code))
        if existing is None:
            return CodeNotFound()
        if existing.status == USED:
            return CodeNotRedeemable("used")
        if existing.status == DISABLED:
            return CodeNotRedeemable("disabled")
        expires_at = as_utc(existing.expires_at)
        if existing.status == EXPIRED or (expires_at is not None and now >= expires_at):
            return CodeNotRedeemable("expired")
        # active and in date on re-read: it changed under us (e.g. re-enabled)
        return CodeNotRedeemable("unavailable")

    def _notify(self, log: SpinLog) -> None:
        if self.publisher is None:
            return
        try:
            self.publisher.publish(ADMIN, "spin:new", {
                "id": log.id,
                "code": log.code,
                "prize": log.prize,
                "usedBy": log.used_by,
                "usedByUsername": log.used_by_username,
                "timestamp": log.timestamp,
            })
            self.publisher.broadcast_kpis(self.db)
        except Exception:
            logger.exception("Spin broadcast failed for %s", log.code)

import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Path, Query, Request
from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .db import get_db
from .deps import get_hub
from .events import ADMIN, EventHub
from .models import Prize, SpinCode, SpinLog, User, ACTIVE, DISABLED, USED
from .redemption import find_user
from .schemas import AdminLoginRequest, AdminLoginResponse, BlockResponse, UserOut, UserResponse, UserUpdate
from .schemas import CodeGenerateRequest, CodeGenerateResponse, SpinCodeList, SpinCodeOut, SpinCodeResponse
from .schemas import PrizeIn, PrizeListResponse, PrizeOut, PrizeResponse, PrizeUpdate, ProbabilitiesBatchRequest
from .schemas import RecentActivity, SpinLogList, SpinLogOut, StatsResponse
from .security import make_admin_token, require_admin, verify_admin_password
from .utils import DEFAULT_PRIZES, as_utc, gen_code, utcnow

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin", tags=["Admin"])

MAX_CODES_PER_BATCH = 200
MIN_CODE_LENGTH, MAX_CODE_LENGTH = 6, 16
# random characters a generated code must keep after its prefix
MIN_RANDOM_CHARS = 4
PROBABILITY_TOLERANCE = 0.1


# --- login ---

_failed: dict[str, list[float]] = {}
_failed_lock = threading.Lock()
MAX_ATTEMPTS = 5
WINDOW_SEC = 15 * 60  # 15 minutes

def _now_s() -> float: return utcnow().timestamp()

def _rate_limit(ip: str):
    t = _now_s()
    with _failed_lock:
        arr = [x for x in _failed.get(ip, []) if t - x < WINDOW_SEC]
        _failed[ip] = arr
    if len(arr) >= MAX_ATTEMPTS:
        raise HTTPException(status_code=429, detail="Too many failed login attempts, try again later")

def _mark_fail(ip: str):
    with _failed_lock:
        _failed.setdefault(ip, []).append(_now_s())

def _clear_fail(ip: str):
    with _failed_lock:
        _failed.pop(ip, None)


@router.post("/login", response_model=AdminLoginResponse)
def admin_login(body: AdminLoginRequest, request: Request):
    ip = request.client.host if request.client else "unknown"
    _rate_limit(ip)

    if not verify_admin_password(body.password):
        _mark_fail(ip)
        logger.warning("Failed admin login from %s", ip)
        raise HTTPException(status_code=401, detail="Invalid credentials")

    _clear_fail(ip)
    return AdminLoginResponse(token=make_admin_token())


# --- stats ---

@router.get("/stats", response_model=StatsResponse)
def admin_stats(db: Session = Depends(get_db), hub: EventHub = Depends(get_hub), _=Depends(require_admin)):
    recent = db.scalars(
        select(SpinCode)
          .where(SpinCode.status == USED)
          .order_by(SpinCode.used_at.desc())
          .limit(10)
    ).all()
    return StatsResponse(
        stats=hub.snapshot(db),
        total_codes=db.scalar(select(func.count(SpinCode.id))) or 0,
        recent_activity=[RecentActivity.model_validate(c) for c in recent],
    )


# --- spin codes ---

def _unique_codes(db: Session, count: int, length: int, prefix: str) -> list[str]:
    """``count`` fresh codes, unique within the batch and against the table."""
    batch: set[str] = set()
    for _ in range(10):
        while len(batch) < count:
            batch.add(gen_code(length, prefix))
        taken = set(db.scalars(select(SpinCode.code).where(SpinCode.code.in_(batch))).all())
        if not taken:
            return sorted(batch)
        batch -= taken
    raise HTTPException(status_code=500, detail="Could not generate unique codes, try again")


@router.post("/spin-codes/generate", response_model=CodeGenerateResponse)
def generate_codes(
    payload: CodeGenerateRequest,
    db: Session = Depends(get_db),
    hub: EventHub = Depends(get_hub),
    _=Depends(require_admin),
):
    count = min(max(payload.count, 1), MAX_CODES_PER_BATCH)
    length = min(max(payload.length, MIN_CODE_LENGTH), MAX_CODE_LENGTH)
    prefix = payload.prefix.strip().upper()
    if prefix and not prefix.isalnum():
        raise HTTPException(status_code=400, detail="Prefix may only contain letters and digits")
    if len(prefix) > length - MIN_RANDOM_CHARS:
        raise HTTPException(status_code=400, detail=f"Prefix too long for {length}-character codes")
    expires_at = as_utc(payload.expires_at)

    codes = None
    for _attempt in range(3):
        candidates = _unique_codes(db, count, length, prefix)
        db.add_all([
            SpinCode(code=c, status=ACTIVE, note=payload.note, expires_at=expires_at)
            for c in candidates
        ])
        try:
            db.commit()
            codes = candidates
            break
        except IntegrityError:
            # another batch took one of ours in the meantime
            db.rollback()

    if codes is None:
        raise HTTPException(status_code=500, detail="Could not generate unique codes, try again")

    logger.info("Generated %d codes (length=%d, prefix=%r)", len(codes), length, prefix)
    hub.broadcast_kpis(db)
    hub.publish(ADMIN, "code:new", {"count": len(codes)})
    return CodeGenerateResponse(count=len(codes), codes=codes)


@router.get("/spin-codes", response_model=SpinCodeList)
def list_codes(
    status: Optional[Literal["active", "used", "disabled", "expired"]] = None,
    search: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    db: Session = Depends(get_db),
    _=Depends(require_admin),
):
    q = select(SpinCode)
    if status:
        q = q.where(SpinCode.status == status)
    if search and search.strip():
        q = q.where(SpinCode.code.contains(search.strip().upper(), autoescape=True))

    total = db.scalar(select(func.count()).select_from(q.subquery())) or 0
    items = db.scalars(
        q.order_by(SpinCode.created_at.desc(), SpinCode.id.desc())
         .offset((page - 1) * limit)
         .limit(limit)
    ).all()
    return SpinCodeList(items=[SpinCodeOut.model_validate(c) for c in items], total=total)


def _log_window(range_: str | None, now: datetime) -> tuple[datetime | None, datetime | None]:
    if range_ == "today":
        return now.replace(hour=0, minute=0, second=0, microsecond=0), None
    if range_ == "7d":
        return now - timedelta(days=7), None
    if range_ == "30d":
        return now - timedelta(days=30), None
    if range_:
        try:
            day = datetime.strptime(range_, "%Y-%m-%d").replace(tzinfo=timezone.utc)
        except ValueError:
            raise HTTPException(status_code=400, detail="range must be today, 7d, 30d or YYYY-MM-DD")
        return day, day + timedelta(days=1)
    return None, None


@router.get("/spin-codes/logs", response_model=SpinLogList)
def list_logs(
    range_: Optional[str] = Query(None, alias="range"),
    search: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    db: Session = Depends(get_db),
    _=Depends(require_admin),
):
    q = select(SpinLog)
    start, end = _log_window(range_, utcnow())
    if start is not None:
        q = q.where(SpinLog.timestamp >= start)
    if end is not None:
        q = q.where(SpinLog.timestamp < end)
    if search and search.strip():
        term = search.strip()
        q = q.where(or_(
            SpinLog.code.contains(term.upper(), autoescape=True),
            func.lower(SpinLog.used_by_username).contains(term.lower(), autoescape=True),
        ))

    total = db.scalar(select(func.count()).select_from(q.subquery())) or 0
    items = db.scalars(
        q.order_by(SpinLog.timestamp.desc(), SpinLog.id.desc())
         .offset((page - 1) * limit)
         .limit(limit)
    ).all()
    return SpinLogList(items=[SpinLogOut.model_validate(x) for x in items], total=total)


def _set_code_status(db: Session, code_id: int, new_status: str) -> SpinCode:
    # any code can be disabled; only a never-redeemed one can come back
    criteria = [SpinCode.id == code_id]
    if new_status == ACTIVE:
        criteria += [SpinCode.status != USED, SpinCode.used_at.is_(None)]
    result = db.execute(
        update(SpinCode).where(*criteria).values(status=new_status)
          .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        if db.get(SpinCode, code_id) is None:
            raise HTTPException(status_code=404, detail="Code not found")
        raise HTTPException(status_code=400, detail="Cannot enable a used code")
    db.commit()
    code = db.get(SpinCode, code_id)
    db.refresh(code)
    return code


@router.put("/spin-codes/{code_id}/disable", response_model=SpinCodeResponse)
def disable_code(code_id: int = Path(..., ge=1), db: Session = Depends(get_db),
                 hub: EventHub = Depends(get_hub), _=Depends(require_admin)):
    code = _set_code_status(db, code_id, DISABLED)
    out = SpinCodeOut.model_validate(code)
    hub.publish(ADMIN, "code:update", out.model_dump())
    hub.broadcast_kpis(db)
    return SpinCodeResponse(code=out)


@router.put("/spin-codes/{code_id}/enable", response_model=SpinCodeResponse)
def enable_code(code_id: int = Path(..., ge=1), db: Session = Depends(get_db),
                hub: EventHub = Depends(get_hub), _=Depends(require_admin)):
    code = _set_code_status(db, code_id, ACTIVE)
    out = SpinCodeOut.model_validate(code)
    hub.publish(ADMIN, "code:update", out.model_dump())
    hub.broadcast_kpis(db)
    return SpinCodeResponse(code=out)


# --- prizes ---

def _ordered_prizes(db: Session, active_only: bool = False) -> list[Prize]:
    q = select(Prize)
    if active_only:
        q = q.where(Prize.is_active.is_(True))
    return db.scalars(q.order_by(Prize.order.asc(), Prize.id.asc())).all()


def _get_prize(db: Session, prize_id: int) -> Prize:
    p = db.get(Prize, prize_id)
    if not p:
        raise HTTPException(status_code=404, detail="Prize not found")
    return p


@router.get("/prizes", response_model=PrizeListResponse)
def admin_list_prizes(db: Session = Depends(get_db), _=Depends(require_admin)):
    return PrizeListResponse(prizes=[PrizeOut.model_validate(p) for p in _ordered_prizes(db)])


@router.get("/prizes/active", response_model=PrizeListResponse)
def admin_active_prizes(db: Session = Depends(get_db), _=Depends(require_admin)):
    return PrizeListResponse(prizes=[PrizeOut.model_validate(p) for p in _ordered_prizes(db, active_only=True)])


@router.post("/prizes", response_model=PrizeResponse, status_code=201)
def admin_add_prize(payload: PrizeIn, db: Session = Depends(get_db),
                    hub: EventHub = Depends(get_hub), _=Depends(require_admin)):
    order = payload.order
    if order is None:
        max_order = db.scalar(select(func.max(Prize.order)))
        order = max_order + 1 if max_order is not None else 0

    p = Prize(
        name=payload.name.strip(),
        color=payload.color or "#E11D48",
        probability=payload.probability if payload.probability is not None else 10,
        is_active=payload.is_active,
        order=order,
    )
    db.add(p); db.commit(); db.refresh(p)

    out = PrizeOut.model_validate(p)
    hub.publish(ADMIN, "prize:new", out.model_dump())
    return PrizeResponse(prize=out)


@router.put("/prizes/probabilities/batch")
def admin_set_probabilities(payload: ProbabilitiesBatchRequest, db: Session = Depends(get_db),
                            hub: EventHub = Depends(get_hub), _=Depends(require_admin)):
    items = payload.probabilities
    if not items:
        raise HTTPException(status_code=400, detail="Invalid probabilities data")

    ids = [item.id for item in items]
    if len(set(ids)) != len(ids):
        raise HTTPException(status_code=400, detail="Each prize may appear only once")

    total = sum(item.probability for item in items)
    if abs(total - 100) > PROBABILITY_TOLERANCE:
        raise HTTPException(status_code=400, detail=f"Total probability must be 100%. Current: {total:.1f}%")

    prizes = {p.id: p for p in db.scalars(select(Prize).where(Prize.id.in_(ids))).all()}
    missing = [pid for pid in ids if pid not in prizes]
    if missing:
        raise HTTPException(status_code=404, detail=f"Prize not found: {', '.join(map(str, missing))}")

    # all or nothing: one commit for the whole batch
    for item in items:
        prizes[item.id].probability = item.probability
    db.commit()

    hub.publish(ADMIN, "prize:probabilities-updated", [item.model_dump() for item in items])
    return {"ok": True, "message": "Probabilities updated"}


@router.put("/prizes/{prize_id}", response_model=PrizeResponse)
def admin_update_prize(payload: PrizeUpdate, prize_id: int = Path(..., ge=1), db: Session = Depends(get_db),
                       hub: EventHub = Depends(get_hub), _=Depends(require_admin)):
    p = _get_prize(db, prize_id)
    for field, value in payload.model_dump(exclude_unset=True).items():
        if value is None:
            continue
        setattr(p, field, value)
    db.commit(); db.refresh(p)

    out = PrizeOut.model_validate(p)
    hub.publish(ADMIN, "prize:update", out.model_dump())
    return PrizeResponse(prize=out)


@router.delete("/prizes/{prize_id}")
def admin_delete_prize(prize_id: int = Path(..., ge=1), db: Session = Depends(get_db),
                       hub: EventHub = Depends(get_hub), _=Depends(require_admin)):
    p = _get_prize(db, prize_id)
    db.delete(p)
    db.commit()
    hub.publish(ADMIN, "prize:delete", {"id": prize_id})
    return {"ok": True, "message": "Prize deleted"}


@router.post("/prizes/seed")
def admin_seed_prizes(db: Session = Depends(get_db), _=Depends(require_admin)):
    if db.scalar(select(func.count(Prize.id))):
        raise HTTPException(status_code=400, detail="Prizes already exist")

    db.add_all([
        Prize(name=d.name, color=d.color, probability=d.probability, order=i)
        for i, d in enumerate(DEFAULT_PRIZES)
    ])
    db.commit()
    return {"ok": True, "message": "Default prizes seeded", "count": len(DEFAULT_PRIZES)}


# --- users ---

def _get_user(db: Session, user_id: int) -> User:
    user = db.get(User, user_id)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return user


@router.get("/users/{user_id}", response_model=UserResponse)
def get_user(user_id: int = Path(..., ge=1), db: Session = Depends(get_db), _=Depends(require_admin)):
    return UserResponse(user=UserOut.model_validate(_get_user(db, user_id)))


@router.put("/users/{user_id}", response_model=UserResponse)
def rename_user(payload: UserUpdate, user_id: int = Path(..., ge=1), db: Session = Depends(get_db),
                hub: EventHub = Depends(get_hub), _=Depends(require_admin)):
    user = _get_user(db, user_id)
    username = payload.username.strip()
    if not username:
        raise HTTPException(status_code=400, detail="Username is required")

    # lookups ignore case, so names must be unique ignoring case too
    other = find_user(db, username)
    if other is not None and other.id != user.id:
        raise HTTPException(status_code=400, detail="Username already taken")

    user.username = username
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise HTTPException(status_code=400, detail="Username already taken")
    db.refresh(user)

    logger.info("Renamed user %d to %s", user.id, user.username)
    hub.publish(ADMIN, "user:update", {"id": user.id, "username": user.username})
    hub.broadcast_kpis(db)
    return UserResponse(user=UserOut.model_validate(user))


@router.put("/users/{user_id}/block", response_model=BlockResponse)
def toggle_block(user_id: int = Path(..., ge=1), db: Session = Depends(get_db),
                 hub: EventHub = Depends(get_hub), _=Depends(require_admin)):
    user = _get_user(db, user_id)
    if user.role == "admin":
        raise HTTPException(status_code=400, detail="Cannot block admin")

    user.is_blocked = not user.is_blocked
    db.commit()

    hub.publish(ADMIN, "user:update", {"id": user.id, "isBlocked": user.is_blocked})
    state = "Blocked" if user.is_blocked else "Unblocked"
    return BlockResponse(message=f"User {state}", is_blocked=user.is_blocked)

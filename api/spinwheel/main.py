import asyncio
import logging
import os
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Depends, HTTPException, Request, WebSocket, WebSocketDisconnect, status
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .admin import router as admin_router
from .config import settings
from .db import Base, SessionLocal, engine, get_db
from .deps import get_engine, get_hub
from .errors import RedemptionError, RedemptionSystemError, redemption_exc_handler
from .events import ADMIN, PUBLIC, EventHub
from .models import User, SpinLog
from .presence import PresenceTracker
from .redemption import RedemptionEngine, find_user, load_candidates
from .schemas import SpinRequest, SpinResponse, SpinPrize, HistoryItem, HistoryResponse
from .schemas import PrizeOut, PrizeListResponse, UserLoginRequest, UserLoginResponse
from .security import decode_token, make_user_token, require_user

logger = logging.getLogger(__name__)


def configure_logging():
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s - %(levelname)s - [%(name)s] - %(message)s",
    )


@asynccontextmanager
async def app_lifespan(app: FastAPI):
    configure_logging()
    Base.metadata.create_all(bind=engine)

    presence = PresenceTracker()
    hub = EventHub(presence, session_factory=SessionLocal)
    hub.bind_loop(asyncio.get_running_loop())
    app.state.presence = presence
    app.state.hub = hub
    logger.info("Spin wheel API ready")
    yield


app = FastAPI(title="Spin Wheel API", lifespan=app_lifespan)

# CORS (dev-friendly): allow explicit origins from .env
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,           # exact list
    allow_origin_regex=settings.allowed_origin_regex, # regex (e.g. r"^https://.*\.vercel\.app$")
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(admin_router)


@app.exception_handler(StarletteHTTPException)
async def http_exc_handler(request: Request, exc: StarletteHTTPException):
  return JSONResponse(status_code=exc.status_code, content={"ok": False, "message": str(exc.detail), "code": "HTTP_ERROR"})

@app.exception_handler(RequestValidationError)
async def validation_exc_handler(request: Request, exc: RequestValidationError):
  return JSONResponse(status_code=422, content={"ok": False, "message": "Validation error", "code": "VALIDATION_ERROR", "errors": exc.errors()})

app.add_exception_handler(RedemptionError, redemption_exc_handler)


@app.get("/health")
def health():
    return {"ok": True}


# --- wheel ---

@app.get("/api/prizes", response_model=PrizeListResponse)
def public_prizes(db: Session = Depends(get_db)):
    # same list, same order as the draw in RedemptionEngine
    prizes = [
        PrizeOut(id=p.id, name=p.name, color=p.color, probability=p.probability, order=i)
        for i, p in enumerate(load_candidates(db))
    ]
    return PrizeListResponse(prizes=prizes)


@app.post("/api/game/spin", response_model=SpinResponse)
def spin(payload: SpinRequest, redemption: RedemptionEngine = Depends(get_engine)):
    try:
        result = redemption.redeem(payload.code, payload.username)
    except RedemptionError:
        raise
    except Exception:
        logger.exception("Spin error")
        raise RedemptionSystemError()

    return SpinResponse(
        winning_index=result.winning_index,
        prize=SpinPrize(id=result.prize_id, text=result.prize.name, color=result.prize.color),
        message=f"Congratulations! You won {result.prize.name}",
    )


@app.get("/api/game/history/{username}", response_model=HistoryResponse)
def history(username: str, db: Session = Depends(get_db)):
    rows = db.scalars(
        select(SpinLog)
          .where(func.lower(SpinLog.used_by_username) == username.strip().lower())
          .order_by(SpinLog.timestamp.desc(), SpinLog.id.desc())
          .limit(settings.history_limit)
    ).all()
    items = [HistoryItem.model_validate(r) for r in rows]
    return HistoryResponse(history=items, count=len(items))


# --- player login ---

@app.post("/api/auth/login", response_model=UserLoginResponse)
def user_login(body: UserLoginRequest, db: Session = Depends(get_db), hub: EventHub = Depends(get_hub)):
    username = body.username.strip()
    if not username:
        raise HTTPException(status_code=400, detail="Username is required")

    user = find_user(db, username)
    if not user:
        user = User(username=username, role="user")
        db.add(user)
        try:
            db.commit(); db.refresh(user)
            logger.info("Registered guest user %s", username)
            hub.publish(ADMIN, "user:new", {"id": user.id, "username": user.username})
        except IntegrityError:
            # registered by a parallel request
            db.rollback()
            user = find_user(db, username)

    if user.is_blocked:
        raise HTTPException(status_code=403, detail="Your account has been suspended")

    token = make_user_token(user.id, user.username)
    hub.publish(ADMIN, "user:login", {"id": user.id, "username": user.username})
    hub.broadcast_kpis(db)
    return UserLoginResponse(message="Login successful", token=token, username=user.username)


@app.post("/api/auth/logout")
def user_logout(claims: dict = Depends(require_user), db: Session = Depends(get_db),
                hub: EventHub = Depends(get_hub)):
    hub.publish(ADMIN, "user:logout", {"id": int(claims["sub"]), "username": claims.get("username")})
    hub.broadcast_kpis(db)
    return {"ok": True, "message": "Logged out"}


# --- live sockets ---

async def _drain(websocket: WebSocket):
    # clients don't send anything meaningful; read until they go away
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass


@app.websocket("/ws")
async def public_socket(websocket: WebSocket, token: str | None = None):
    hub: EventHub = websocket.app.state.hub
    claims = decode_token(token, "user")
    if claims is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    user_id = claims["sub"]
    conn_id = uuid.uuid4().hex
    await hub.connect(websocket, PUBLIC)
    try:
        if hub.presence.register(user_id, conn_id):
            await hub.refresh_kpis()
        await hub.send(websocket, "presence:registered", {
            "userId": user_id,
            "activeUsers": hub.presence.count(),
        })
        await _drain(websocket)
    finally:
        hub.disconnect(websocket, PUBLIC)
        if hub.presence.unregister(user_id, conn_id):
            await hub.refresh_kpis()


@app.websocket("/ws/admin")
async def admin_socket(websocket: WebSocket, token: str | None = None):
    hub: EventHub = websocket.app.state.hub
    if decode_token(token, "admin") is None:
        logger.info("Admin socket rejected: no valid admin token")
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await hub.connect(websocket, ADMIN)
    try:
        stats = await run_in_threadpool(hub.snapshot)
        await hub.send(websocket, "kpi:update", stats.model_dump(by_alias=True))
        await _drain(websocket)
    finally:
        hub.disconnect(websocket, ADMIN)


def run():
    import uvicorn
    uvicorn.run(
        "spinwheel.main:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", 8080)),
        reload=False,
    )


if __name__ == "__main__":
    run()

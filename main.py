import logging
from datetime import datetime
from typing import Callable, List, Optional

from fastapi import FastAPI, Depends
from fastapi.middleware.cors import CORSMiddleware
from sqlmodel import Session, SQLModel
from sqlalchemy import text

from admin import router as admin_router
from config import LOG_LEVEL
from db import engine, get_session
from deps import get_operator, get_registry, get_store, http_error
from errors import MatchError
from ledger import EventLedger, MatchEvent, TimelineEntry, timeline
from live import LiveMatchSession, LiveRegistry
from models import EventType
from permissions import Operator
from state_machine import status_label
from store import MatchStore

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Live Match API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(admin_router)


@app.on_event("startup")
def on_startup():
    app.state.registry = LiveRegistry(MatchStore(engine))
    try:
        app.state.registry.resume_active()
    except Exception as e:
        # schema non ancora creato: si crea da /admin/init-db
        logger.warning("Impossibile riprendere le partite live all'avvio: %r", e)


@app.on_event("shutdown")
async def on_shutdown():
    await app.state.registry.close_all()


@app.get("/")
def root():
    return {"ok": True}


@app.get("/healthz")
def healthz(session: Session = Depends(get_session)):
    try:
        session.exec(text("SELECT 1"))
        return {"ok": True, "db": "up"}
    except Exception:
        return {"ok": True, "db": "down"}


# ========== VISTA PARTITA ==========
class ClockView(SQLModel):
    minutes: int
    seconds: int
    half: int
    running: bool
    display: str


class MatchView(SQLModel):
    id: str
    tournament_id: str
    home_team_id: str
    home_team_name: str
    home_team_logo: Optional[str] = None
    away_team_id: str
    away_team_name: str
    away_team_logo: Optional[str] = None
    home_score: int
    away_score: int
    status: str
    status_label: str
    scheduled_time: Optional[datetime] = None
    location: Optional[str] = None
    current_half: int
    current_match_minute: int
    last_updated: Optional[datetime] = None
    start_time: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    settled_at: Optional[datetime] = None
    clock: ClockView
    events: List[MatchEvent] = []


def build_view(session: LiveMatchSession) -> MatchView:
    match = session.store.get_match(session.match_id)
    state = session.clock.state
    return MatchView(
        **match.model_dump(),
        status_label=status_label(match.status, state.half),
        clock=ClockView(
            minutes=state.minutes,
            seconds=state.seconds,
            half=state.half,
            running=state.running,
            display=state.display(),
        ),
        events=session.ledger.events(session.match_id),
    )


async def run_action(registry: LiveRegistry, match_id: str, action: str, fn: Callable) -> MatchView:
    try:
        session = await registry.get(match_id)
    except MatchError as e:
        raise http_error(e) from e
    try:
        await session.run(fn, session)
    except MatchError as e:
        logger.error("Azione %s fallita per match=%s: %s", action, match_id, e.message)
        raise http_error(e) from e
    finally:
        await registry.refresh(session)
    return await session.run(build_view, session)


@app.get("/matches/{match_id}", response_model=MatchView)
async def get_match(match_id: str, registry: LiveRegistry = Depends(get_registry)):
    try:
        session = await registry.get(match_id)
        return await session.run(build_view, session)
    except MatchError as e:
        raise http_error(e) from e


@app.get("/matches/{match_id}/timeline", response_model=List[TimelineEntry])
def get_timeline(match_id: str, store: MatchStore = Depends(get_store)):
    try:
        match = store.get_match(match_id)
    except MatchError as e:
        raise http_error(e) from e
    return timeline(EventLedger(store).events(match_id), match.home_team_id, match.away_team_id)


# ========== CONTROLLI PARTITA ==========
@app.post("/matches/{match_id}/start", response_model=MatchView)
async def start_match(
    match_id: str,
    operator: Operator = Depends(get_operator),
    registry: LiveRegistry = Depends(get_registry),
):
    return await run_action(registry, match_id, "start_match", lambda s: s.start_match(operator))


@app.post("/matches/{match_id}/halftime", response_model=MatchView)
async def end_first_half(
    match_id: str,
    operator: Operator = Depends(get_operator),
    registry: LiveRegistry = Depends(get_registry),
):
    return await run_action(registry, match_id, "end_first_half", lambda s: s.end_first_half(operator))


@app.post("/matches/{match_id}/second-half", response_model=MatchView)
async def start_second_half(
    match_id: str,
    operator: Operator = Depends(get_operator),
    registry: LiveRegistry = Depends(get_registry),
):
    return await run_action(registry, match_id, "start_second_half", lambda s: s.start_second_half(operator))


@app.post("/matches/{match_id}/full-time", response_model=MatchView)
async def end_match(
    match_id: str,
    operator: Operator = Depends(get_operator),
    registry: LiveRegistry = Depends(get_registry),
):
    return await run_action(registry, match_id, "end_match", lambda s: s.end_match(operator))


class EventIn(SQLModel):
    type: EventType = EventType.GOAL
    player_id: Optional[str] = None
    assist_player_id: Optional[str] = None


@app.post("/matches/{match_id}/events", response_model=MatchView)
async def record_event(
    match_id: str,
    data: EventIn,
    operator: Operator = Depends(get_operator),
    registry: LiveRegistry = Depends(get_registry),
):
    return await run_action(
        registry,
        match_id,
        f"record_{data.type.value}",
        lambda s: s.record_event(operator, data.type, data.player_id, data.assist_player_id),
    )

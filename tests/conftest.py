"""
Fixture condivise per i test della partita live.

    pytest tests/
"""
from types import SimpleNamespace

import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

from clock import MatchClock
from config import ClockSettings
from live import LiveMatchSession, Tick
from models import Match, Player, Team
from permissions import Operator
from store import MatchStore

ADMIN = Operator(uid="admin-1", is_administrator=True)
ELEVATED = Operator(uid="super-1", is_elevated=True)
HOME_MANAGER = Operator(uid="mgr-home")
AWAY_MANAGER = Operator(uid="mgr-away")
STRANGER = Operator(uid="someone-else")
ANONYMOUS = Operator(uid=None)


class FakeTime:
    """Orologio di sistema finto: avanza solo quando lo dice il test."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


def run_clock(session: LiveMatchSession, fake_time: FakeTime, seconds: int) -> None:
    """Simula il loop da un secondo per `seconds` secondi."""
    for _ in range(seconds):
        fake_time.advance(1)
        session.handle(Tick())


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def store(engine):
    return MatchStore(engine)


@pytest.fixture
def seeded(engine):
    """Torneo t1 con due squadre da due giocatori e una partita programmata."""
    with Session(engine) as session:
        session.add(Team(id="home", name="Lions", sport="Football", manager_id="mgr-home", manager_name="Ana"))
        session.add(Team(id="away", name="Tigers", sport="Football", manager_id="mgr-away", manager_name="Bo"))
        session.add(Player(id="pA", team_id="home", display_name="Player A", position=0))
        session.add(Player(id="pB", team_id="home", display_name="Player B", position=1))
        session.add(Player(id="pC", team_id="away", display_name="Player C", position=0))
        session.add(Player(id="pD", team_id="away", display_name="Player D", position=1))
        session.add(
            Match(
                id="m1",
                tournament_id="t1",
                home_team_id="home",
                home_team_name="Lions",
                away_team_id="away",
                away_team_name="Tigers",
                location="Field 1",
            )
        )
        session.commit()
    return SimpleNamespace(match_id="m1", tournament_id="t1", home="home", away="away")


@pytest.fixture
def fake_time():
    return FakeTime()


@pytest.fixture
def settings():
    return ClockSettings(
        half_length_minutes=20,
        halftime_length_minutes=5,
        max_tick_delta=10,
        checkpoint_throttle=5,
    )


@pytest.fixture
def live_session(store, seeded, settings, fake_time):
    return LiveMatchSession(seeded.match_id, store, settings, now=fake_time)


@pytest.fixture
def saves():
    return []


@pytest.fixture
def clock(saves, settings, fake_time):
    return MatchClock(lambda minutes, half: saves.append((minutes, half)), settings, now=fake_time)


@pytest.fixture
def client(engine, seeded, monkeypatch):
    """TestClient FastAPI sullo store in memoria, senza loop in background."""
    from fastapi.testclient import TestClient

    import live
    import main
    from db import get_session

    monkeypatch.setattr(main, "engine", engine)
    monkeypatch.setattr(live, "LIVE_AUTORUN", False)

    def _session():
        with Session(engine) as session:
            yield session

    main.app.dependency_overrides[get_session] = _session
    with TestClient(main.app) as test_client:
        yield test_client
    main.app.dependency_overrides.clear()

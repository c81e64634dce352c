import asyncio
import time
from datetime import datetime, timedelta, timezone

import pytest
from sqlmodel import Session

from config import ClockSettings
from conftest import ADMIN, HOME_MANAGER, run_clock
from errors import AlreadySettledError, InvalidTransitionError, PersistenceError
from live import LiveMatchSession, LiveRegistry, PeriodicSave, RemoteSnapshot, Teardown, Tick
from models import EventType, Match, MatchStatus, TournamentPlayerStat, TournamentTeamStat
from settlement import settle


def _load(engine) -> Match:
    with Session(engine) as session:
        return session.get(Match, "m1")


def _failing(*args, **kwargs):
    raise PersistenceError("store unavailable", match_id="m1", action="test")


def test_full_match_scenario(live_session, fake_time, engine, store):
    session = live_session
    session.start_match(HOME_MANAGER)
    run_clock(session, fake_time, 5 * 60)
    session.record_event(HOME_MANAGER, EventType.GOAL, "pA", "pB")

    run_clock(session, fake_time, 15 * 60)
    match = _load(engine)
    assert match.status == "halftime"
    assert match.current_match_minute == 20
    assert match.home_score == 1

    session.start_second_half(HOME_MANAGER)
    run_clock(session, fake_time, 20 * 60)
    match = _load(engine)
    assert match.status == "finished"
    assert match.current_half == 2
    assert match.completed_at is not None

    # la chiusura statistiche è già avvenuta a fine partita
    with pytest.raises(AlreadySettledError):
        settle(store, "m1")

    with Session(engine) as db:
        assert db.get(TournamentPlayerStat, ("t1", "pA")).goals == 1
        assert db.get(TournamentPlayerStat, ("t1", "pB")).assists == 1
        home = db.get(TournamentTeamStat, ("t1", "home"))
        assert (home.won, home.points) == (1, 3)
        away = db.get(TournamentTeamStat, ("t1", "away"))
        assert (away.lost, away.points) == (1, 0)


def test_periodic_save_and_ticks_never_pass_half_length(live_session, fake_time):
    live_session.start_match(ADMIN)
    for _ in range(24 * 60):
        fake_time.advance(1)
        live_session.handle(PeriodicSave())
        live_session.handle(Tick())
        assert live_session.clock.state.minutes <= 20
    assert live_session.status == MatchStatus.HALFTIME
    assert live_session.clock.state.half == 1


def test_halftime_break_starts_second_half(live_session, fake_time, engine):
    live_session.start_match(ADMIN)
    run_clock(live_session, fake_time, 20 * 60)
    assert live_session.status == MatchStatus.HALFTIME

    run_clock(live_session, fake_time, 5 * 60 - 1)
    assert live_session.status == MatchStatus.HALFTIME
    run_clock(live_session, fake_time, 1)
    assert live_session.status == MatchStatus.LIVE
    assert (live_session.clock.state.minutes, live_session.clock.state.half) == (0, 2)
    assert _load(engine).current_half == 2


def test_unsaved_clock_signal_is_retried(live_session, fake_time, store, monkeypatch):
    live_session.start_match(ADMIN)
    run_clock(live_session, fake_time, 19 * 60 + 59)
    monkeypatch.setattr(store, "update_match", _failing)
    run_clock(live_session, fake_time, 1)
    assert live_session.status == MatchStatus.LIVE
    assert live_session.pending_signal is not None
    assert not live_session.clock.running

    monkeypatch.undo()
    run_clock(live_session, fake_time, 1)
    assert live_session.status == MatchStatus.HALFTIME
    assert live_session.pending_signal is None


def test_reload_resumes_from_checkpoint(live_session, store, settings, fake_time):
    live_session.start_match(ADMIN)
    run_clock(live_session, fake_time, 7 * 60 + 30)
    live_session.handle(Teardown())
    assert not live_session.clock.running

    reloaded = LiveMatchSession("m1", store, settings, now=fake_time)
    reloaded.handle(RemoteSnapshot.from_match(store.get_match("m1")))
    assert reloaded.clock.running
    assert (reloaded.clock.state.minutes, reloaded.clock.state.half) == (7, 1)

    run_clock(reloaded, fake_time, 30)
    reloaded.handle(RemoteSnapshot.from_match(store.get_match("m1")))
    # già in corsa: non riparte da capo
    assert (reloaded.clock.state.minutes, reloaded.clock.state.seconds) == (7, 30)


def test_remote_halftime_halts_local_clock(live_session, fake_time):
    live_session.start_match(ADMIN)
    run_clock(live_session, fake_time, 8 * 60)
    later = datetime.now(timezone.utc) + timedelta(minutes=1)
    live_session.handle(RemoteSnapshot(status="halftime", current_half=1, current_match_minute=20, last_updated=later))
    assert live_session.status == MatchStatus.HALFTIME
    assert not live_session.clock.running
    assert live_session.clock.state.minutes == 20
    assert live_session.halftime_deadline == later.timestamp() + 300


def test_stale_snapshot_is_ignored(live_session):
    live_session.start_match(ADMIN)
    live_session.end_first_half(ADMIN)
    live_session.start_second_half(ADMIN)
    stale = RemoteSnapshot(
        status="halftime",
        current_half=1,
        current_match_minute=20,
        last_updated=datetime(2000, 1, 1, tzinfo=timezone.utc),
    )
    live_session.handle(stale)
    assert live_session.status == MatchStatus.LIVE
    assert live_session.clock.running


def test_registry_resumes_active_matches(store, seeded, settings):
    first = LiveRegistry(store, settings, autorun=False)
    first.open("m1").start_match(ADMIN)

    restarted = LiveRegistry(store, settings, autorun=False)
    assert restarted.resume_active() == 1
    session = restarted.sessions["m1"]
    assert session.status == MatchStatus.LIVE
    assert session.clock.running


def test_background_loops_flush_on_close(store, seeded, engine):
    settings = ClockSettings(tick_interval=0.01, periodic_save_interval=0.03, snapshot_poll_interval=0.02)
    registry = LiveRegistry(store, settings, autorun=True)

    async def scenario():
        session = await registry.get("m1")
        session.start_match(ADMIN)
        await registry.refresh(session)
        assert len(session._tasks) == 4
        await asyncio.sleep(0.1)
        await registry.close_all()
        return session

    session = asyncio.run(scenario())
    assert registry.sessions == {}
    assert not session.clock.running
    assert _load(engine).status == "live"


def test_stale_session_cannot_restart_live_match(store, seeded, settings, fake_time, engine):
    worker_a = LiveRegistry(store, settings, autorun=False, now=fake_time)
    worker_b = LiveRegistry(store, settings, autorun=False, now=fake_time)
    stale = worker_a.open("m1")
    fresh = worker_b.open("m1")
    fresh.start_match(ADMIN)
    run_clock(fresh, fake_time, 12 * 60)
    started_at = _load(engine).start_time

    with pytest.raises(InvalidTransitionError):
        stale.start_match(ADMIN)
    match = _load(engine)
    assert match.current_match_minute == 12
    assert match.start_time == started_at
    # la sessione rimasta indietro si è riallineata allo stato salvato
    assert stale.status == MatchStatus.LIVE
    assert stale.clock.running
    assert stale.clock.state.minutes == 12


def test_stale_session_drops_half_end_already_saved(store, seeded, settings, fake_time, engine):
    stale = LiveMatchSession("m1", store, settings, now=fake_time)
    stale.start_match(ADMIN)
    other = LiveMatchSession("m1", store, settings, now=fake_time)
    other.handle(RemoteSnapshot.from_match(store.get_match("m1")))
    other.end_first_half(ADMIN)

    run_clock(stale, fake_time, 20 * 60)
    assert stale.pending_signal is None
    assert stale.status == MatchStatus.HALFTIME
    assert _load(engine).status == "halftime"
    assert _load(engine).current_match_minute == 20


def test_session_released_when_clock_ends_match(store, seeded, fake_time):
    settings = ClockSettings(tick_interval=0.01, periodic_save_interval=60, snapshot_poll_interval=60)
    registry = LiveRegistry(store, settings, autorun=True, now=fake_time)

    async def scenario():
        session = await registry.get("m1")
        # partita programmata: nessuna sessione registrata
        assert registry.sessions == {}
        session.start_match(ADMIN)
        session.end_first_half(ADMIN)
        session.start_second_half(ADMIN)
        run_clock(session, fake_time, 19 * 60 + 59)
        await registry.refresh(session)
        assert registry.sessions == {"m1": session}
        tasks = list(session._tasks)

        fake_time.advance(1)
        for _ in range(300):
            await asyncio.sleep(0.01)
            if all(task.done() for task in tasks):
                break
        return session, tasks

    session, tasks = asyncio.run(scenario())
    assert session.status == MatchStatus.FINISHED
    assert registry.sessions == {}
    assert all(task.done() for task in tasks)


def test_slow_store_does_not_block_event_loop(store, seeded):
    settings = ClockSettings(
        tick_interval=0.01,
        periodic_save_interval=0.02,
        snapshot_poll_interval=60,
        checkpoint_throttle=0,
    )
    registry = LiveRegistry(store, settings, autorun=True)
    saves = []

    def slow_save(minutes, half):
        # solo il primo salvataggio è lento
        if not saves:
            time.sleep(0.5)
        saves.append((minutes, half))

    async def scenario():
        session = await registry.get("m1")
        session.start_match(ADMIN)
        session.clock.persist = slow_save
        await registry.refresh(session)
        await asyncio.sleep(0.05)
        started = time.monotonic()
        await asyncio.sleep(0.01)
        elapsed = time.monotonic() - started
        await registry.close_all()
        return elapsed

    assert asyncio.run(scenario()) < 0.3
    assert saves

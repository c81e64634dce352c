"""
Sessione live di una partita.

Due sorgenti indipendenti producono intenti: il loop locale (tick ogni
secondo, salvataggio periodico) e il poller che rilegge la partita dallo
store (aggiornamenti fatti da altri operatori o da altri processi). Tutti
gli intenti passano da un'unica coda e vengono applicati da handle(), uno
alla volta, così l'ordine è deterministico.

Le letture e scritture sullo store sono sincrone (SQLModel): girano nel
thread pool del loop, sotto il lock della sessione, così il loop non si
blocca e il riduttore resta seriale.
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from functools import partial
from typing import Callable, Dict, List, Optional, Set, Tuple, Union

from clock import ClockSignal, MatchClock
from config import ClockSettings, LIVE_AUTORUN
from errors import InvalidTransitionError, MatchError, PersistenceError, SettlementError
from ledger import EventLedger, MatchEvent
from models import EventType, Match, MatchStatus
from permissions import SYSTEM, Operator
from settlement import settle
from state_machine import MatchStateMachine
from store import MatchStore

logger = logging.getLogger(__name__)

ACTIVE = (MatchStatus.LIVE, MatchStatus.HALFTIME)


# ========== INTENTI ==========
@dataclass(frozen=True)
class Tick:
    pass


@dataclass(frozen=True)
class PeriodicSave:
    pass


@dataclass(frozen=True)
class RemoteSnapshot:
    status: str
    current_half: int
    current_match_minute: int
    last_updated: Optional[datetime] = None

    @classmethod
    def from_match(cls, match: Match) -> "RemoteSnapshot":
        return cls(
            status=match.status,
            current_half=match.current_half or 1,
            current_match_minute=match.current_match_minute or 0,
            last_updated=match.last_updated,
        )


@dataclass(frozen=True)
class Teardown:
    pass


Intent = Union[Tick, PeriodicSave, RemoteSnapshot, Teardown]


def _epoch(value: Optional[datetime]) -> Optional[float]:
    if value is None:
        return None
    if value.tzinfo is None:
        # SQLite restituisce datetime naive: sono comunque UTC
        value = value.replace(tzinfo=timezone.utc)
    return value.timestamp()


class LiveMatchSession:
    def __init__(
        self,
        match_id: str,
        store: MatchStore,
        settings: Optional[ClockSettings] = None,
        now: Callable[[], float] = time.time,
        settle_fn: Optional[Callable[[str], object]] = None,
    ):
        self.match_id = match_id
        self.store = store
        self.settings = settings or ClockSettings()
        self.now = now
        self.clock = MatchClock(partial(store.save_checkpoint, match_id), self.settings, now)
        self.machine = MatchStateMachine(
            match_id,
            store,
            self.clock,
            settle_fn or partial(settle, store),
            self.settings,
        )
        self.ledger = EventLedger(store)
        self.pending_signal: Optional[ClockSignal] = None
        self.halftime_deadline: Optional[float] = None
        self.last_error: Optional[MatchError] = None
        # last_updated dell'ultima versione della partita vista da questa sessione
        self.version: Optional[float] = None
        # chiamata dal consumer quando la partita risulta finita
        self.on_finished: Optional[Callable[["LiveMatchSession"], None]] = None
        self.lock = asyncio.Lock()
        self._queue: Optional[asyncio.Queue] = None
        self._tasks: List[asyncio.Task] = []

    @property
    def status(self) -> MatchStatus:
        return self.machine.status

    # ========== RIDUTTORE ==========
    def handle(self, intent: Intent) -> None:
        if isinstance(intent, Tick):
            self._on_tick()
        elif isinstance(intent, PeriodicSave):
            if self.clock.running:
                self.clock.checkpoint()
        elif isinstance(intent, RemoteSnapshot):
            self._on_snapshot(intent)
        elif isinstance(intent, Teardown):
            if self.clock.running:
                logger.info("Chiusura sessione match=%s, salvo il tempo", self.match_id)
                self.clock.stop()

    def _on_tick(self) -> None:
        signal = self.clock.tick()
        if signal is not None:
            self.pending_signal = signal
        if self.pending_signal is not None:
            self._apply_signal()
        if (
            self.status == MatchStatus.HALFTIME
            and self.halftime_deadline is not None
            and self.now() >= self.halftime_deadline
        ):
            try:
                self.start_second_half(SYSTEM)
            except PersistenceError:
                logger.warning("Avvio secondo tempo fallito per match=%s, riprovo", self.match_id)

    def _apply_signal(self) -> None:
        signal = self.pending_signal
        try:
            if signal == ClockSignal.FIRST_HALF_ENDED:
                self.end_first_half(SYSTEM)
            else:
                self.end_match(SYSTEM)
        except PersistenceError as e:
            # il segnale resta in sospeso e viene ritentato al prossimo tick
            self.last_error = e
            logger.warning("Transizione %s non salvata per match=%s", signal.value, self.match_id)
            return
        except SettlementError as e:
            self.last_error = e
            logger.error("Partita %s finita ma statistiche non elaborate: %s", self.match_id, e.message)
        except InvalidTransitionError as e:
            # un altro operatore ha già chiuso il tempo; resync ha azzerato il segnale
            self.last_error = e
            logger.info("Segnale %s superato dallo stato salvato per match=%s", signal.value, self.match_id)
        self.pending_signal = None

    def _track(self, match: Match) -> Match:
        seen = _epoch(match.last_updated)
        if seen is not None and (self.version is None or seen > self.version):
            self.version = seen
        return match

    def _on_snapshot(self, snapshot: RemoteSnapshot) -> None:
        seen = _epoch(snapshot.last_updated)
        if seen is not None and self.version is not None and seen < self.version:
            # letta prima di una scrittura locale più recente
            return
        if seen is not None:
            self.version = seen
        status = MatchStatus(snapshot.status)
        self.machine.sync(status, snapshot.current_half)
        if status == MatchStatus.LIVE:
            local = self.clock.state
            if not self.clock.running and self.pending_signal is None:
                logger.info(
                    "Riprendo match=%s dal minuto %d, tempo %d",
                    self.match_id, snapshot.current_match_minute, snapshot.current_half,
                )
                self.clock.start(snapshot.current_match_minute, snapshot.current_half)
            elif self.clock.running and snapshot.current_half > local.half:
                self.clock.start(snapshot.current_match_minute, snapshot.current_half)
            self.halftime_deadline = None
        elif status == MatchStatus.HALFTIME:
            self.clock.halt_at(self.settings.half_length_minutes, 1)
            self.pending_signal = None
            if self.halftime_deadline is None:
                entered = _epoch(snapshot.last_updated)
                if entered is None:
                    entered = self.now()
                self.halftime_deadline = entered + self.settings.halftime_break_seconds
        elif status == MatchStatus.FINISHED:
            self.clock.halt_at(self.settings.half_length_minutes, 2)
            self.pending_signal = None
            self.halftime_deadline = None

    def resync(self) -> None:
        """Rilegge la partita dallo store e la applica come snapshot."""
        self.handle(RemoteSnapshot.from_match(self.store.get_match(self.match_id)))

    # ========== AZIONI DELL'OPERATORE ==========
    def _transition(self, action: Callable[[Operator], Match], operator: Operator) -> Match:
        try:
            return self._track(action(operator))
        except InvalidTransitionError:
            # lo stato salvato non è quello che si vedeva qui: si riallinea il cronometro
            try:
                self.resync()
            except MatchError as e:
                logger.warning("Riallineamento match=%s fallito: %s", self.match_id, e.message)
            raise

    def start_match(self, operator: Operator) -> Match:
        return self._transition(self.machine.start_match, operator)

    def end_first_half(self, operator: Operator) -> Match:
        match = self._transition(self.machine.end_first_half, operator)
        self.halftime_deadline = self.now() + self.settings.halftime_break_seconds
        return match

    def start_second_half(self, operator: Operator) -> Match:
        match = self._transition(self.machine.start_second_half, operator)
        self.halftime_deadline = None
        return match

    def end_match(self, operator: Operator) -> Match:
        return self._transition(self.machine.end_match, operator)

    def record_event(
        self,
        operator: Operator,
        event_type: EventType,
        player_id: Optional[str] = None,
        assist_player_id: Optional[str] = None,
    ) -> Tuple[Match, MatchEvent]:
        match, event = self.ledger.record(
            self.match_id,
            operator,
            event_type,
            self.clock.state,
            player_id=player_id,
            assist_player_id=assist_player_id,
        )
        return self._track(match), event

    # ========== LOOP ASINCRONI ==========
    async def run(self, fn: Callable, *args):
        """Esegue fn(*args) nel thread pool, uno alla volta per sessione."""
        async with self.lock:
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(None, partial(fn, *args))

    def activate(self) -> None:
        if self._tasks:
            return
        self._queue = asyncio.Queue()
        self._tasks = [
            asyncio.create_task(self._consume()),
            asyncio.create_task(self._every(self.settings.tick_interval, Tick)),
            asyncio.create_task(self._every(self.settings.periodic_save_interval, PeriodicSave)),
            asyncio.create_task(self._poll()),
        ]

    async def _every(self, interval: float, intent: Callable[[], Intent]) -> None:
        while self.status != MatchStatus.FINISHED:
            await asyncio.sleep(interval)
            self._queue.put_nowait(intent())

    async def _poll(self) -> None:
        while self.status != MatchStatus.FINISHED:
            await asyncio.sleep(self.settings.snapshot_poll_interval)
            try:
                match = await self.run(self.store.get_match, self.match_id)
            except MatchError as e:
                logger.warning("Lettura match=%s fallita: %s", self.match_id, e.message)
                continue
            self._queue.put_nowait(RemoteSnapshot.from_match(match))

    async def _consume(self) -> None:
        while True:
            intent = await self._queue.get()
            try:
                await self.run(self.handle, intent)
            except Exception:
                # un tick andato male non deve fermare il cronometro
                logger.exception("Errore nel gestire %r per match=%s", intent, self.match_id)
            if isinstance(intent, Teardown):
                return
            if self.status == MatchStatus.FINISHED and self.on_finished is not None:
                callback, self.on_finished = self.on_finished, None
                callback(self)

    async def close(self) -> None:
        if not self._tasks:
            await self.run(self.handle, Teardown())
            return
        consumer, producers = self._tasks[0], self._tasks[1:]
        for task in producers:
            task.cancel()
        await asyncio.gather(*producers, return_exceptions=True)
        # il Teardown passa dalla coda, dopo gli intenti già accodati
        self._queue.put_nowait(Teardown())
        await consumer
        self._tasks = []


class LiveRegistry:
    """Sessioni live attive, una per partita."""

    def __init__(
        self,
        store: MatchStore,
        settings: Optional[ClockSettings] = None,
        autorun: Optional[bool] = None,
        now: Callable[[], float] = time.time,
    ):
        self.store = store
        self.settings = settings or ClockSettings()
        self.autorun = LIVE_AUTORUN if autorun is None else autorun
        self.now = now
        self.sessions: Dict[str, LiveMatchSession] = {}
        self._releasing: Set[asyncio.Task] = set()

    def open(self, match_id: str) -> LiveMatchSession:
        """Crea una sessione allineata allo stato salvato, senza registrarla."""
        match = self.store.get_match(match_id)
        session = LiveMatchSession(match_id, self.store, self.settings, now=self.now)
        session.handle(RemoteSnapshot.from_match(match))
        return session

    def _register(self, session: LiveMatchSession) -> LiveMatchSession:
        current = self.sessions.setdefault(session.match_id, session)
        if current is session:
            session.on_finished = self._finished
        if self.autorun:
            current.activate()
        return current

    def _finished(self, session: LiveMatchSession) -> None:
        if self.sessions.get(session.match_id) is not session:
            return
        del self.sessions[session.match_id]
        logger.info("Partita %s finita, libero la sessione", session.match_id)
        task = asyncio.create_task(session.close())
        self._releasing.add(task)
        task.add_done_callback(self._releasing.discard)

    async def get(self, match_id: str) -> LiveMatchSession:
        """
        Sessione della partita. Solo le partite in corso restano registrate;
        per quelle programmate o finite si ottiene una sessione usa e getta.
        """
        session = self.sessions.get(match_id)
        if session is not None:
            return session
        loop = asyncio.get_running_loop()
        session = await loop.run_in_executor(None, self.open, match_id)
        if session.status not in ACTIVE:
            return session
        return self._register(session)

    async def refresh(self, session: LiveMatchSession) -> None:
        """Dopo un'azione: registra e avvia la sessione se la partita è in corso, altrimenti la libera."""
        if session.status not in ACTIVE:
            if self.sessions.get(session.match_id) is session:
                await self.release(session.match_id)
            return
        current = self._register(session)
        if current is not session:
            # un'altra richiesta ha aperto la sessione nel frattempo
            await current.run(current.resync)

    def resume_active(self) -> int:
        matches = self.store.active_matches()
        for match in matches:
            if match.id not in self.sessions:
                self._register(self.open(match.id))
        if matches:
            logger.info("Riprese %d partite live", len(matches))
        return len(matches)

    async def release(self, match_id: str) -> None:
        session = self.sessions.pop(match_id, None)
        if session is not None:
            await session.close()

    async def close_all(self) -> None:
        for match_id in list(self.sessions):
            await self.release(match_id)
        if self._releasing:
            await asyncio.gather(*self._releasing, return_exceptions=True)

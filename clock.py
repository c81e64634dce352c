import logging
import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, Optional

from config import ClockSettings, SECONDS_PER_MINUTE

logger = logging.getLogger(__name__)


class ClockSignal(str, Enum):
    FIRST_HALF_ENDED = "first_half_ended"
    MATCH_ENDED = "match_ended"


@dataclass(frozen=True)
class SavedCheckpoint:
    minutes: int
    half: int
    at: float


@dataclass(frozen=True)
class ClockState:
    minutes: int = 0
    seconds: int = 0
    half: int = 1
    running: bool = False
    last_tick: Optional[float] = None
    last_saved: Optional[SavedCheckpoint] = None

    def display(self) -> str:
        return f"{self.minutes:02d}:{self.seconds:02d}"


def advance(state: ClockState, now: float, settings: ClockSettings):
    """
    Calcola il nuovo stato dopo un tick, senza effetti collaterali.

    I secondi trascorsi sono presi dal delta dell'orologio di sistema, così
    un tab sospeso non rallenta il cronometro; il delta è limitato a
    max_tick_delta per non accreditare tempo dopo uno sleep della macchina.
    Ritorna (nuovo_stato, segnale_o_None).
    """
    if not state.running or state.last_tick is None:
        return state, None

    delta = int((now - state.last_tick) // 1)
    if delta < 0:
        return replace(state, last_tick=now), None
    if delta > settings.max_tick_delta:
        delta = settings.max_tick_delta
        last_tick = now
    else:
        # la frazione di secondo non consumata resta per il prossimo tick
        last_tick = state.last_tick + delta

    seconds = state.seconds + delta
    minutes = state.minutes + seconds // SECONDS_PER_MINUTE
    seconds %= SECONDS_PER_MINUTE

    if minutes >= settings.half_length_minutes:
        signal = ClockSignal.FIRST_HALF_ENDED if state.half == 1 else ClockSignal.MATCH_ENDED
        ended = replace(
            state,
            minutes=settings.half_length_minutes,
            seconds=0,
            running=False,
            last_tick=None,
        )
        return ended, signal

    return replace(state, minutes=minutes, seconds=seconds, last_tick=last_tick), None


class MatchClock:
    """
    Cronometro riprendibile di un tempo di gioco.

    La persistenza del checkpoint (minuto, tempo) è iniettata: gli errori di
    salvataggio vengono loggati e ignorati, il cronometro continua in locale.
    """

    def __init__(
        self,
        persist: Callable[[int, int], None],
        settings: Optional[ClockSettings] = None,
        now: Callable[[], float] = time.time,
    ):
        self.persist = persist
        self.settings = settings or ClockSettings()
        self.now = now
        self.state = ClockState()

    @property
    def running(self) -> bool:
        return self.state.running

    def start(self, start_minute: int = 0, start_half: int = 1) -> ClockState:
        self.state = ClockState(
            minutes=start_minute,
            seconds=0,
            half=start_half,
            running=True,
            last_tick=self.now(),
            last_saved=self.state.last_saved,
        )
        self.checkpoint()
        logger.info("Cronometro avviato al minuto %d, tempo %d", start_minute, start_half)
        return self.state

    def resume(self) -> ClockState:
        """Riparte dallo stato corrente senza azzerarlo."""
        self.state = replace(self.state, running=True, last_tick=self.now())
        return self.state

    def tick(self) -> Optional[ClockSignal]:
        previous = self.state
        self.state, signal = advance(previous, self.now(), self.settings)
        if signal is not None:
            logger.info("Fine tempo %d raggiunta (%s)", previous.half, signal.value)
            self.checkpoint(force=True)
            return signal
        if self.state.minutes > previous.minutes:
            self.checkpoint()
        return None

    def stop(self) -> ClockState:
        self.state = replace(self.state, running=False, last_tick=None)
        logger.info("Cronometro fermato al minuto %d, tempo %d", self.state.minutes, self.state.half)
        self.checkpoint(force=True)
        return self.state

    def halt_at(self, minutes: int, half: int) -> ClockState:
        """Ferma il cronometro su una lettura data, senza salvare."""
        self.state = ClockState(minutes=minutes, seconds=0, half=half, last_saved=self.state.last_saved)
        return self.state

    def checkpoint(self, force: bool = False) -> bool:
        """
        Salva (minuto, tempo). Senza force il salvataggio viene saltato se lo
        stesso checkpoint è già stato scritto negli ultimi checkpoint_throttle
        secondi.
        """
        now = self.now()
        minutes, half = self.state.minutes, self.state.half
        saved = self.state.last_saved
        if (
            not force
            and saved is not None
            and saved.minutes == minutes
            and saved.half == half
            and now - saved.at < self.settings.checkpoint_throttle
        ):
            return False
        try:
            self.persist(minutes, half)
        except Exception:
            logger.exception("Errore nel salvataggio del tempo partita (minuto %d, tempo %d)", minutes, half)
            return False
        self.state = replace(self.state, last_saved=SavedCheckpoint(minutes, half, now))
        return True

import logging
from typing import Callable, Optional

from clock import MatchClock
from config import ClockSettings
from errors import InvalidTransitionError, PersistenceError
from models import Match, MatchStatus, utcnow
from permissions import Operator, require_manage
from store import MatchStore

logger = logging.getLogger(__name__)

STATUS_LABELS = {
    MatchStatus.SCHEDULED: "Scheduled",
    MatchStatus.HALFTIME: "Half Time",
    MatchStatus.FINISHED: "Full Time",
}


def status_label(status: str, half: int) -> str:
    status = MatchStatus(status)
    if status == MatchStatus.LIVE:
        return "First Half" if half == 1 else "Second Half"
    return STATUS_LABELS[status]


class MatchStateMachine:
    """
    scheduled -> live(1) -> halftime -> live(2) -> finished

    Lo stato in memoria avanza solo dopo che la scrittura sullo store è
    andata a buon fine; se fallisce si solleva PersistenceError e l'azione
    può essere ripetuta.
    """

    def __init__(
        self,
        match_id: str,
        store: MatchStore,
        clock: MatchClock,
        settle: Callable[[str], object],
        settings: Optional[ClockSettings] = None,
    ):
        self.match_id = match_id
        self.store = store
        self.clock = clock
        self.settle = settle
        self.settings = settings or ClockSettings()
        self.status = MatchStatus.SCHEDULED
        self.half = 1

    def sync(self, status: str, half: int) -> None:
        self.status = MatchStatus(status)
        self.half = half

    # ========== GUARDIE ==========
    def _authorize(self, operator: Operator, action: str) -> Match:
        match = self.store.get_match(self.match_id)
        home_team = self.store.get_team(match.home_team_id)
        away_team = self.store.get_team(match.away_team_id)
        require_manage(operator, home_team, away_team, match_id=self.match_id, action=action)
        # lo stato salvato vince su quello in memoria: un'altra sessione può
        # aver già fatto avanzare la partita
        self.sync(match.status, match.current_half or 1)
        return match

    def _expect(self, action: str, status: MatchStatus, half: Optional[int] = None) -> None:
        if self.status != status or (half is not None and self.half != half):
            raise InvalidTransitionError(
                f"Cannot {action.replace('_', ' ')} while match is {self.status.value} (half {self.half})",
                match_id=self.match_id,
                action=action,
            )

    def _persist(self, action: str, **fields) -> Match:
        try:
            return self.store.update_match(self.match_id, action=action, **fields)
        except PersistenceError:
            logger.error("Transizione %s fallita per match=%s", action, self.match_id)
            raise

    # ========== TRANSIZIONI ==========
    def start_match(self, operator: Operator) -> Match:
        self._authorize(operator, "start_match")
        self._expect("start_match", MatchStatus.SCHEDULED)
        match = self._persist(
            "start_match",
            status=MatchStatus.LIVE.value,
            start_time=utcnow(),
            current_match_minute=0,
            current_half=1,
        )
        self.sync(MatchStatus.LIVE, 1)
        self.clock.start(0, 1)
        return match

    def end_first_half(self, operator: Operator) -> Match:
        self._authorize(operator, "end_first_half")
        self._expect("end_first_half", MatchStatus.LIVE, half=1)
        was_running = self.clock.running
        if was_running:
            self.clock.stop()
        try:
            match = self._persist(
                "end_first_half",
                status=MatchStatus.HALFTIME.value,
                current_match_minute=self.settings.half_length_minutes,
                current_half=1,
            )
        except PersistenceError:
            if was_running:
                self.clock.resume()
            raise
        self.sync(MatchStatus.HALFTIME, 1)
        self.clock.halt_at(self.settings.half_length_minutes, 1)
        return match

    def start_second_half(self, operator: Operator) -> Match:
        self._authorize(operator, "start_second_half")
        self._expect("start_second_half", MatchStatus.HALFTIME)
        match = self._persist(
            "start_second_half",
            status=MatchStatus.LIVE.value,
            current_match_minute=0,
            current_half=2,
        )
        self.sync(MatchStatus.LIVE, 2)
        self.clock.start(0, 2)
        return match

    def end_match(self, operator: Operator) -> Match:
        """
        Chiude la partita e lancia la chiusura statistiche. Se quest'ultima
        fallisce la partita resta "finished" e l'errore viene propagato:
        la chiusura si può ripetere a mano.
        """
        self._authorize(operator, "end_match")
        self._expect("end_match", MatchStatus.LIVE, half=2)
        was_running = self.clock.running
        if was_running:
            self.clock.stop()
        try:
            match = self._persist(
                "end_match",
                status=MatchStatus.FINISHED.value,
                completed_at=utcnow(),
                current_match_minute=self.settings.half_length_minutes,
                current_half=2,
            )
        except PersistenceError:
            if was_running:
                self.clock.resume()
            raise
        self.sync(MatchStatus.FINISHED, 2)
        self.clock.halt_at(self.settings.half_length_minutes, 2)

        self.settle(self.match_id)
        return self.store.get_match(self.match_id)

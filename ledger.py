import logging
import uuid
from datetime import datetime
from typing import Iterable, List, Literal, Optional, Tuple, Union

from sqlmodel import SQLModel

from clock import ClockState
from errors import InvalidTransitionError, MatchValidationError
from models import EventType, LedgerEntry, Match, MatchStatus, Player, utcnow
from permissions import Operator, require_manage
from store import AWAY, HOME, MatchStore

logger = logging.getLogger(__name__)


# ========== EVENTI (variante con tag sul campo "type") ==========
class EventEnvelope(SQLModel):
    id: str
    team_id: str
    player_id: str
    player_name: str
    minute: int
    half: int
    timestamp: datetime


class Goal(EventEnvelope):
    type: Literal["goal"] = "goal"
    assist_player_id: Optional[str] = None
    assist_player_name: Optional[str] = None


class Card(EventEnvelope):
    type: Literal["yellowCard", "redCard"]


class Substitution(EventEnvelope):
    type: Literal["substitution"] = "substitution"


MatchEvent = Union[Goal, Card, Substitution]


def to_event(entry: LedgerEntry) -> MatchEvent:
    common = dict(
        id=entry.event_id,
        team_id=entry.team_id,
        player_id=entry.player_id,
        player_name=entry.player_name,
        minute=entry.minute,
        half=entry.half,
        timestamp=entry.timestamp,
    )
    if entry.type == EventType.GOAL.value:
        return Goal(
            assist_player_id=entry.assist_player_id,
            assist_player_name=entry.assist_player_name,
            **common,
        )
    if entry.type in (EventType.YELLOW_CARD.value, EventType.RED_CARD.value):
        return Card(type=entry.type, **common)
    if entry.type == EventType.SUBSTITUTION.value:
        return Substitution(**common)
    raise ValueError(f"Unknown event type: {entry.type}")


def to_entry(match_id: str, event: MatchEvent) -> LedgerEntry:
    return LedgerEntry(
        event_id=event.id,
        match_id=match_id,
        type=event.type,
        team_id=event.team_id,
        player_id=event.player_id,
        player_name=event.player_name,
        assist_player_id=getattr(event, "assist_player_id", None),
        assist_player_name=getattr(event, "assist_player_name", None),
        minute=event.minute,
        half=event.half,
        timestamp=event.timestamp,
    )


# ========== LETTURA: ordinamento e punteggio ==========
def sort_events(events: Iterable[MatchEvent]) -> List[MatchEvent]:
    # sort stabile: a parità di tempo e minuto resta l'ordine di inserimento
    return sorted(events, key=lambda e: (e.half, e.minute))


def derive_score(events: Iterable[MatchEvent], home_team_id: str, away_team_id: str) -> Tuple[int, int]:
    home = away = 0
    for event in events:
        if event.type != EventType.GOAL.value:
            continue
        if event.team_id == home_team_id:
            home += 1
        elif event.team_id == away_team_id:
            away += 1
    return home, away


class TimelineEntry(SQLModel):
    event: MatchEvent
    home_score: int
    away_score: int


def timeline(events: Iterable[MatchEvent], home_team_id: str, away_team_id: str) -> List[TimelineEntry]:
    """Eventi in ordine cronologico con il punteggio al momento di ciascuno."""
    entries = []
    home = away = 0
    for event in sort_events(events):
        if event.type == EventType.GOAL.value:
            if event.team_id == home_team_id:
                home += 1
            elif event.team_id == away_team_id:
                away += 1
        entries.append(TimelineEntry(event=event, home_score=home, away_score=away))
    return entries


# ========== SCRITTURA ==========
def _find(players: List[Player], player_id: str) -> Optional[Player]:
    return next((p for p in players if p.id == player_id), None)


class EventLedger:
    def __init__(self, store: MatchStore):
        self.store = store

    def events(self, match_id: str) -> List[MatchEvent]:
        return [to_event(entry) for entry in self.store.events(match_id)]

    def record(
        self,
        match_id: str,
        operator: Operator,
        event_type: EventType,
        reading: ClockState,
        player_id: Optional[str] = None,
        assist_player_id: Optional[str] = None,
    ) -> Tuple[Match, MatchEvent]:
        action = f"record_{EventType(event_type).value}"
        match = self.store.get_match(match_id)
        home_team = self.store.get_team(match.home_team_id)
        away_team = self.store.get_team(match.away_team_id)
        require_manage(operator, home_team, away_team, match_id=match_id, action=action)

        if match.status != MatchStatus.LIVE.value:
            raise InvalidTransitionError(
                "Events can only be recorded while the match is live", match_id=match_id, action=action
            )
        if not player_id:
            raise MatchValidationError("Please select a player", match_id=match_id, action=action)

        home_players = self.store.roster(match.home_team_id)
        away_players = self.store.roster(match.away_team_id)
        player = _find(home_players, player_id) or _find(away_players, player_id)
        if player is None:
            raise MatchValidationError("Selected player not found", match_id=match_id, action=action)
        is_home = _find(home_players, player_id) is not None
        team_id = match.home_team_id if is_home else match.away_team_id

        common = dict(
            id=f"event_{uuid.uuid4().hex}",
            team_id=team_id,
            player_id=player.id,
            player_name=player.display_name or "Unknown Player",
            minute=reading.minutes,
            half=reading.half,
            timestamp=utcnow(),
        )
        event_type = EventType(event_type)
        if event_type == EventType.GOAL:
            assist = None
            if assist_player_id:
                assist = _find(home_players, assist_player_id) or _find(away_players, assist_player_id)
                if assist is None:
                    raise MatchValidationError("Assist player not found", match_id=match_id, action=action)
            event = Goal(
                assist_player_id=assist.id if assist else None,
                assist_player_name=(assist.display_name or "Unknown Player") if assist else None,
                **common,
            )
        elif assist_player_id:
            raise MatchValidationError("Only goals can have an assist", match_id=match_id, action=action)
        elif event_type == EventType.SUBSTITUTION:
            event = Substitution(**common)
        else:
            event = Card(type=event_type.value, **common)

        scoring_side = None
        if event_type == EventType.GOAL:
            scoring_side = HOME if is_home else AWAY
        match = self.store.append_event(match_id, to_entry(match_id, event), scoring_side)
        logger.info(
            "Evento %s registrato match=%s giocatore=%s minuto %d (tempo %d)",
            event.type, match_id, event.player_id, event.minute, event.half,
        )
        return match, event

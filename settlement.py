"""
Chiusura statistica di una partita finita.

Il protocollo è in due fasi esplicite, come richiesto dallo store
transazionale (tutte le letture prima di qualsiasi scrittura):

    collect_reads(session, match_id) -> ReadSet
    compute_writes(ReadSet)          -> WriteSet     (puro, nessun I/O)
    apply_writes(session, WriteSet)

settle() esegue le tre fasi in una sola transazione: se qualcosa fallisce,
partita e aggregati restano come prima.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from sqlalchemy import func
from sqlmodel import Session, select

from errors import AlreadySettledError, MatchNotFoundError, SettlementError
from models import (
    EventType,
    LedgerEntry,
    Match,
    MatchStatus,
    Player,
    Team,
    TournamentPlayerStat,
    TournamentTeamStat,
    utcnow,
)
from store import MatchStore

logger = logging.getLogger(__name__)

POINTS_WIN = 3
POINTS_DRAW = 1
POINTS_LOSS = 0


@dataclass
class PlayerDelta:
    goals: int = 0
    assists: int = 0
    yellow_cards: int = 0
    red_cards: int = 0


@dataclass(frozen=True)
class ReadSet:
    match: Match
    events: List[LedgerEntry]
    player_stats: Dict[str, Optional[TournamentPlayerStat]]
    team_stats: Dict[str, Optional[TournamentTeamStat]]
    teams: Dict[str, Optional[Team]]
    member_counts: Dict[str, int]


@dataclass(frozen=True)
class Upsert:
    row: object
    create: bool


@dataclass(frozen=True)
class WriteSet:
    match_id: str
    settled_at: datetime
    player_stats: List[Upsert] = field(default_factory=list)
    team_stats: List[Upsert] = field(default_factory=list)


# ========== FASE 1: LETTURE ==========
def player_deltas(events: List[LedgerEntry]) -> Dict[str, PlayerDelta]:
    """Raggruppa gli eventi per giocatore (autore o assist), in ordine di registro."""
    deltas: Dict[str, PlayerDelta] = {}
    for event in events:
        delta = deltas.setdefault(event.player_id, PlayerDelta())
        if event.type == EventType.GOAL.value:
            delta.goals += 1
        elif event.type == EventType.YELLOW_CARD.value:
            delta.yellow_cards += 1
        elif event.type == EventType.RED_CARD.value:
            delta.red_cards += 1
        if event.assist_player_id:
            deltas.setdefault(event.assist_player_id, PlayerDelta()).assists += 1
    return deltas


def collect_reads(session: Session, match_id: str) -> ReadSet:
    match = session.exec(select(Match).where(Match.id == match_id).with_for_update()).first()
    if match is None:
        raise MatchNotFoundError("Match document not found", match_id=match_id, action="settle")
    if not match.tournament_id:
        raise SettlementError("Tournament ID not found in match data", match_id=match_id, action="settle")
    if match.settled_at is not None:
        raise AlreadySettledError("Match statistics already processed", match_id=match_id, action="settle")
    if match.status != MatchStatus.FINISHED.value:
        raise SettlementError("Only finished matches can be settled", match_id=match_id, action="settle")

    events = list(
        session.exec(select(LedgerEntry).where(LedgerEntry.match_id == match_id).order_by(LedgerEntry.seq)).all()
    )

    player_stats = {
        player_id: session.get(TournamentPlayerStat, (match.tournament_id, player_id))
        for player_id in player_deltas(events)
    }

    team_ids = (match.home_team_id, match.away_team_id)
    team_stats = {
        team_id: session.get(TournamentTeamStat, (match.tournament_id, team_id)) for team_id in team_ids
    }
    teams = {team_id: session.get(Team, team_id) for team_id in team_ids}
    member_counts = {
        team_id: session.exec(select(func.count()).select_from(Player).where(Player.team_id == team_id)).one()
        for team_id in team_ids
    }
    return ReadSet(
        match=match,
        events=events,
        player_stats=player_stats,
        team_stats=team_stats,
        teams=teams,
        member_counts=member_counts,
    )


# ========== FASE 2: CALCOLO ==========
def classify(own: int, other: int) -> Tuple[str, int]:
    if own > other:
        return "won", POINTS_WIN
    if own == other:
        return "draw", POINTS_DRAW
    return "lost", POINTS_LOSS


def _player_row(tournament_id: str, player_id: str, delta: PlayerDelta, current: Optional[TournamentPlayerStat]):
    base = current or TournamentPlayerStat(tournament_id=tournament_id, player_id=player_id)
    return TournamentPlayerStat(
        tournament_id=tournament_id,
        player_id=player_id,
        goals=(base.goals or 0) + delta.goals,
        assists=(base.assists or 0) + delta.assists,
        yellow_cards=(base.yellow_cards or 0) + delta.yellow_cards,
        red_cards=(base.red_cards or 0) + delta.red_cards,
        matches_played=(base.matches_played or 0) + 1,
    )


def _team_row(read_set: ReadSet, team_id: str, own: int, other: int, now: datetime) -> TournamentTeamStat:
    match = read_set.match
    current = read_set.team_stats.get(team_id)
    if current is None:
        team = read_set.teams.get(team_id)
        if team is None:
            side = "Home" if team_id == match.home_team_id else "Away"
            logger.error("%s team %s non trovata tra le squadre", side, team_id)
            raise SettlementError(f"{side} team {team_id} not found", match_id=match.id, action="settle")
        current = TournamentTeamStat(
            tournament_id=match.tournament_id,
            team_id=team_id,
            team_name=team.name or "Unknown Team",
            manager_name=team.manager_name or "Unknown Manager",
            sport=team.sport or "Football",
            member_count=read_set.member_counts.get(team_id, 0),
            registered_at=now,
        )

    outcome, earned = classify(own, other)
    row = TournamentTeamStat(
        tournament_id=current.tournament_id,
        team_id=current.team_id,
        team_name=current.team_name,
        manager_name=current.manager_name,
        sport=current.sport,
        member_count=current.member_count,
        registered_at=current.registered_at,
        played=(current.played or 0) + 1,
        won=current.won or 0,
        draw=current.draw or 0,
        lost=current.lost or 0,
        goals_for=(current.goals_for or 0) + own,
        goals_against=(current.goals_against or 0) + other,
        points=(current.points or 0) + earned,
    )
    setattr(row, outcome, getattr(row, outcome) + 1)
    return row


def compute_writes(read_set: ReadSet, now: Optional[datetime] = None) -> WriteSet:
    now = now or utcnow()
    match = read_set.match
    deltas = player_deltas(read_set.events)
    player_rows = [
        Upsert(
            row=_player_row(match.tournament_id, player_id, delta, read_set.player_stats.get(player_id)),
            create=read_set.player_stats.get(player_id) is None,
        )
        for player_id, delta in deltas.items()
    ]
    home, away = match.home_score or 0, match.away_score or 0
    team_rows = [
        Upsert(
            row=_team_row(read_set, team_id, own, other, now),
            create=read_set.team_stats.get(team_id) is None,
        )
        for team_id, own, other in (
            (match.home_team_id, home, away),
            (match.away_team_id, away, home),
        )
    ]
    return WriteSet(match_id=match.id, settled_at=now, player_stats=player_rows, team_stats=team_rows)


# ========== FASE 3: SCRITTURE ==========
def apply_writes(session: Session, write_set: WriteSet) -> None:
    # le righe esistenti sono già nella identity map dalla fase di lettura:
    # merge le aggiorna senza nuove SELECT
    for upsert in write_set.player_stats + write_set.team_stats:
        if upsert.create:
            session.add(upsert.row)
        else:
            session.merge(upsert.row)
    match = session.get(Match, write_set.match_id)
    match.settled_at = write_set.settled_at
    session.add(match)
    session.flush()


def settle(store: MatchStore, match_id: str) -> WriteSet:
    """
    Aggrega eventi e risultato di una partita finita nelle statistiche di
    torneo di giocatori e squadre, in un'unica transazione tutto-o-niente.
    """
    try:
        with store.transaction() as session:
            read_set = collect_reads(session, match_id)
            write_set = compute_writes(read_set)
            apply_writes(session, write_set)
    except SettlementError:
        raise
    except MatchNotFoundError as e:
        raise SettlementError(e.message, match_id=match_id, action="settle") from e
    except Exception as e:
        logger.error("Errore nella chiusura statistiche match=%s: %r", match_id, e)
        raise SettlementError("Failed to process match statistics", match_id=match_id, action="settle") from e

    logger.info(
        "Statistiche partita %s elaborate: %d giocatori, %d squadre",
        match_id, len(write_set.player_stats), len(write_set.team_stats),
    )
    return write_set

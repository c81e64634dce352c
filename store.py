import logging
from contextlib import contextmanager
from typing import Iterator, List, Optional

from sqlalchemy import update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from errors import MatchNotFoundError, InvalidTransitionError, PersistenceError
from models import LedgerEntry, Match, MatchStatus, Player, Team, utcnow

logger = logging.getLogger(__name__)

HOME = "home"
AWAY = "away"


class MatchStore:
    """
    Confine di persistenza per le partite live.

    Ogni operazione apre la propria Session sull'engine; gli update sono
    parziali (solo i campi passati) e timbrano sempre last_updated.
    """

    def __init__(self, engine: Engine):
        self.engine = engine

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        """Session con commit alla fine e rollback su qualsiasi errore."""
        with Session(self.engine, expire_on_commit=False) as session:
            try:
                yield session
                session.commit()
            except Exception:
                session.rollback()
                raise

    # ========== LETTURE ==========
    def get_match(self, match_id: str) -> Match:
        try:
            with Session(self.engine) as session:
                match = session.get(Match, match_id)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to load match: {e!r}", match_id=match_id, action="load") from e
        if match is None:
            raise MatchNotFoundError("Match not found", match_id=match_id, action="load")
        return match

    def get_team(self, team_id: str) -> Optional[Team]:
        with Session(self.engine) as session:
            return session.get(Team, team_id)

    def roster(self, team_id: str) -> List[Player]:
        with Session(self.engine) as session:
            stmt = select(Player).where(Player.team_id == team_id).order_by(Player.position, Player.id)
            return list(session.exec(stmt).all())

    def events(self, match_id: str) -> List[LedgerEntry]:
        with Session(self.engine) as session:
            stmt = select(LedgerEntry).where(LedgerEntry.match_id == match_id).order_by(LedgerEntry.seq)
            return list(session.exec(stmt).all())

    def active_matches(self) -> List[Match]:
        with Session(self.engine) as session:
            stmt = select(Match).where(
                Match.status.in_([MatchStatus.LIVE.value, MatchStatus.HALFTIME.value])
            )
            return list(session.exec(stmt).all())

    # ========== SCRITTURE ==========
    def update_match(self, match_id: str, action: str = "update", **fields) -> Match:
        """Merge parziale dei campi sul documento partita."""
        fields.setdefault("last_updated", utcnow())
        try:
            with self.transaction() as session:
                match = session.get(Match, match_id)
                if match is None:
                    raise MatchNotFoundError("Match not found", match_id=match_id, action=action)
                for key, value in fields.items():
                    setattr(match, key, value)
                session.add(match)
                session.flush()
                session.refresh(match)
                return match
        except SQLAlchemyError as e:
            logger.error("Errore persistenza match=%s action=%s: %r", match_id, action, e)
            raise PersistenceError(f"Failed to {action}", match_id=match_id, action=action) from e

    def save_checkpoint(self, match_id: str, minutes: int, half: int) -> None:
        """Salva (minuto, tempo) solo se la partita è ancora in corso."""
        stmt = (
            update(Match)
            .where(Match.id == match_id, Match.status == MatchStatus.LIVE.value)
            .values(current_match_minute=minutes, current_half=half, last_updated=utcnow())
        )
        try:
            with self.transaction() as session:
                saved = session.exec(stmt).rowcount
        except SQLAlchemyError as e:
            logger.error("Errore persistenza match=%s action=checkpoint: %r", match_id, e)
            raise PersistenceError("Failed to checkpoint", match_id=match_id, action="checkpoint") from e
        if saved:
            logger.info("Salvo il tempo partita match=%s: minuto %d, tempo %d", match_id, minutes, half)
        else:
            logger.info("Tempo non salvato per match=%s: partita non in corso", match_id)

    def append_event(self, match_id: str, entry: LedgerEntry, scoring_side: Optional[str] = None) -> Match:
        """
        Aggiunge un evento al registro e, per i goal, incrementa il punteggio
        della squadra nello stesso commit: o entrambe le scritture o nessuna.
        L'incremento è un'espressione SQL (score = score + 1), non un valore
        calcolato in memoria.
        """
        try:
            with self.transaction() as session:
                match = session.get(Match, match_id)
                if match is None:
                    raise MatchNotFoundError("Match not found", match_id=match_id, action="record_event")
                if match.status != MatchStatus.LIVE.value:
                    raise InvalidTransitionError(
                        "Events can only be recorded while the match is live",
                        match_id=match_id,
                        action="record_event",
                    )
                session.add(entry)
                if scoring_side == HOME:
                    match.home_score = Match.home_score + 1
                elif scoring_side == AWAY:
                    match.away_score = Match.away_score + 1
                match.last_updated = utcnow()
                session.add(match)
                session.flush()
                session.refresh(match)
                return match
        except SQLAlchemyError as e:
            logger.error("Errore registrazione evento match=%s: %r", match_id, e)
            raise PersistenceError("Failed to record event", match_id=match_id, action="record_event") from e

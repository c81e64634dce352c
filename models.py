from enum import Enum
from typing import Optional
from sqlmodel import SQLModel, Field
from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MatchStatus(str, Enum):
    SCHEDULED = "scheduled"
    LIVE = "live"
    HALFTIME = "halftime"
    FINISHED = "finished"


class EventType(str, Enum):
    GOAL = "goal"
    YELLOW_CARD = "yellowCard"
    RED_CARD = "redCard"
    SUBSTITUTION = "substitution"


# ========== ANAGRAFICHE (gestite dai collaboratori esterni) ==========
class Team(SQLModel, table=True):
    __tablename__ = "team"

    id: str = Field(primary_key=True)
    name: str
    sport: str = Field(default="Football")
    logo: Optional[str] = None
    manager_id: Optional[str] = None
    manager_name: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class Player(SQLModel, table=True):
    __tablename__ = "player"

    id: str = Field(primary_key=True)
    team_id: str = Field(foreign_key="team.id", index=True)
    display_name: str
    # ordine nella rosa
    position: int = Field(default=0)


# ========== PARTITA ==========
class Match(SQLModel, table=True):
    __tablename__ = "match"

    id: str = Field(primary_key=True)
    tournament_id: str = Field(index=True)

    home_team_id: str
    home_team_name: str
    home_team_logo: Optional[str] = None
    away_team_id: str
    away_team_name: str
    away_team_logo: Optional[str] = None

    # cache del conteggio dei goal nel registro eventi
    home_score: int = Field(default=0)
    away_score: int = Field(default=0)

    status: str = Field(default=MatchStatus.SCHEDULED.value, index=True)
    scheduled_time: Optional[datetime] = None
    location: Optional[str] = None

    # checkpoint del cronometro
    current_half: int = Field(default=1)
    current_match_minute: int = Field(default=0)
    last_updated: Optional[datetime] = None

    start_time: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    settled_at: Optional[datetime] = None


class LedgerEntry(SQLModel, table=True):
    """Riga del registro eventi: solo inserimenti, mai update o delete."""

    __tablename__ = "match_event"

    seq: Optional[int] = Field(default=None, primary_key=True)
    event_id: str = Field(index=True)
    match_id: str = Field(foreign_key="match.id", index=True)
    type: str
    team_id: str
    player_id: str
    player_name: str
    assist_player_id: Optional[str] = None
    assist_player_name: Optional[str] = None
    minute: int
    half: int
    timestamp: datetime = Field(default_factory=utcnow)


# ========== AGGREGATI DI TORNEO ==========
class TournamentPlayerStat(SQLModel, table=True):
    __tablename__ = "tournament_player_stat"

    tournament_id: str = Field(primary_key=True)
    player_id: str = Field(primary_key=True)
    goals: int = Field(default=0)
    assists: int = Field(default=0)
    yellow_cards: int = Field(default=0)
    red_cards: int = Field(default=0)
    matches_played: int = Field(default=0)


class TournamentTeamStat(SQLModel, table=True):
    __tablename__ = "tournament_team_stat"

    tournament_id: str = Field(primary_key=True)
    team_id: str = Field(primary_key=True)
    team_name: str = Field(default="Unknown Team")
    manager_name: str = Field(default="Unknown Manager")
    sport: str = Field(default="Football")
    member_count: int = Field(default=0)
    registered_at: Optional[datetime] = None
    played: int = Field(default=0)
    won: int = Field(default=0)
    draw: int = Field(default=0)
    lost: int = Field(default=0)
    goals_for: int = Field(default=0)
    goals_against: int = Field(default=0)
    points: int = Field(default=0)

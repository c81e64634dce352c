from dataclasses import dataclass
from typing import Optional

from errors import PermissionDeniedError
from models import Team


@dataclass(frozen=True)
class Operator:
    """Utente corrente come fornito dal servizio di identità esterno."""

    uid: Optional[str] = None
    is_administrator: bool = False
    is_elevated: bool = False


# usato dal cronometro e dal timer dell'intervallo
SYSTEM = Operator(uid="system", is_elevated=True)


def can_manage_match(operator: Optional[Operator], home_team: Optional[Team], away_team: Optional[Team]) -> bool:
    if operator is None or operator.uid is None:
        return False
    if operator.is_administrator or operator.is_elevated:
        return True
    return any(team is not None and team.manager_id == operator.uid for team in (home_team, away_team))


def can_administer(operator: Optional[Operator]) -> bool:
    return operator is not None and (operator.is_administrator or operator.is_elevated)


def require_manage(operator, home_team, away_team, *, match_id: str, action: str) -> None:
    if not can_manage_match(operator, home_team, away_team):
        raise PermissionDeniedError(
            "You are not allowed to manage this match",
            match_id=match_id,
            action=action,
        )

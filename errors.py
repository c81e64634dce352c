from typing import Optional


class MatchError(Exception):
    """
    Errore base del sottosistema partita live.
    Porta con sé l'id della partita e l'azione, così chi chiama può riprovare.
    """

    def __init__(self, message: str, *, match_id: Optional[str] = None, action: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.match_id = match_id
        self.action = action

    def to_detail(self) -> dict:
        return {"error": self.message, "match_id": self.match_id, "action": self.action}


class MatchNotFoundError(MatchError):
    pass


class MatchValidationError(MatchError):
    pass


class PermissionDeniedError(MatchError):
    pass


class InvalidTransitionError(MatchError):
    pass


class PersistenceError(MatchError):
    """Errore transitorio dello store: l'azione può essere ripetuta."""


class SettlementError(MatchError):
    pass


class AlreadySettledError(SettlementError):
    pass

from typing import Optional

from fastapi import Header, HTTPException, Request

from errors import (
    AlreadySettledError,
    InvalidTransitionError,
    MatchError,
    MatchNotFoundError,
    MatchValidationError,
    PermissionDeniedError,
    PersistenceError,
    SettlementError,
)
from live import LiveRegistry
from permissions import Operator
from store import MatchStore

ERROR_STATUS = (
    (MatchNotFoundError, 404),
    (MatchValidationError, 400),
    (PermissionDeniedError, 403),
    (AlreadySettledError, 409),
    (InvalidTransitionError, 409),
    (PersistenceError, 503),
    (SettlementError, 500),
)


def _flag(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in ("1", "true", "yes")


def get_operator(
    x_user_id: Optional[str] = Header(None),
    x_user_admin: Optional[str] = Header(None),
    x_user_elevated: Optional[str] = Header(None),
) -> Operator:
    # header impostati dal gateway di autenticazione a monte
    return Operator(uid=x_user_id, is_administrator=_flag(x_user_admin), is_elevated=_flag(x_user_elevated))


def get_registry(request: Request) -> LiveRegistry:
    return request.app.state.registry


def get_store(request: Request) -> MatchStore:
    return request.app.state.registry.store


def http_error(e: MatchError) -> HTTPException:
    for cls, status_code in ERROR_STATUS:
        if isinstance(e, cls):
            return HTTPException(status_code=status_code, detail=e.to_detail())
    return HTTPException(status_code=500, detail=e.to_detail())

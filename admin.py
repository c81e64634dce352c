# admin.py
import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import delete

from db import init_db
from deps import get_operator, get_store, http_error
from errors import MatchError
from models import TournamentPlayerStat, TournamentTeamStat
from permissions import Operator, can_administer
from settlement import settle
from store import MatchStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])


def require_admin(operator: Operator = Depends(get_operator)) -> Operator:
    if not can_administer(operator):
        raise HTTPException(status_code=403, detail="Administrator privileges required")
    return operator


@router.post("/init-db")
def init_db_endpoint(store: MatchStore = Depends(get_store)):
    """
    Crea lo schema (tabelle) se mancano.
    Da chiamare una volta dopo il deploy, dato che lo startup è 'lazy'.
    """
    try:
        init_db(store.engine, lazy=False)
        return {"status": "ok", "message": "Schema created/verified"}
    except Exception as e:
        logger.error("ERROR /admin/init-db: %r", e)
        raise HTTPException(status_code=500, detail="Init DB failed")


@router.post("/matches/{match_id}/settle")
def settle_match(
    match_id: str,
    operator: Operator = Depends(require_admin),
    store: MatchStore = Depends(get_store),
):
    """
    Ripete a mano la chiusura statistiche di una partita finita
    (ad esempio dopo aver sistemato una squadra mancante).
    """
    try:
        write_set = settle(store, match_id)
    except MatchError as e:
        logger.error("ERROR settle match=%s richiesto da %s: %s", match_id, operator.uid, e.message)
        raise http_error(e) from e
    return {
        "status": "ok",
        "match_id": match_id,
        "players": len(write_set.player_stats),
        "teams": len(write_set.team_stats),
    }


@router.delete("/tournaments/{tournament_id}/stats")
def reset_tournament_stats(
    tournament_id: str,
    operator: Operator = Depends(require_admin),
    store: MatchStore = Depends(get_store),
):
    """
    Azzera gli aggregati di un torneo. Le partite non vengono toccate,
    ma restano marcate come già elaborate (settled_at).
    """
    try:
        with store.transaction() as session:
            players = session.exec(
                delete(TournamentPlayerStat).where(TournamentPlayerStat.tournament_id == tournament_id)
            ).rowcount
            teams = session.exec(
                delete(TournamentTeamStat).where(TournamentTeamStat.tournament_id == tournament_id)
            ).rowcount
    except Exception as e:
        logger.error("ERROR reset stats torneo=%s: %r", tournament_id, e)
        raise HTTPException(status_code=500, detail="Reset failed")
    logger.info("Statistiche torneo %s azzerate da %s", tournament_id, operator.uid)
    return {"status": "ok", "players": players, "teams": teams}

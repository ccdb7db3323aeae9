from fastapi import APIRouter, Body, Depends

from till.core.deps import get_till, http_error
from till.core.errors import TillError
from till.core.schemas import ScanIn

router = APIRouter(prefix="/till", tags=["scan"])


@router.post("/scan")
async def scan(payload: ScanIn = Body(...), till=Depends(get_till)):
    """Un evento del lector. Los duplicados del mismo escaneo físico vuelven con accepted=false."""
    try:
        outcome = await till.scan(payload.code)
    except TillError as exc:
        raise http_error(exc)
    return {"outcome": outcome, "feedback": till.current_feedback, "beep_tick": till.beep_tick}

from fastapi import APIRouter, Depends, HTTPException

from till.core.deps import get_till, http_error
from till.core.errors import TillError

router = APIRouter(prefix="/carts", tags=["carts"])


@router.get("")
async def list_carts(till=Depends(get_till)):
    return till.tabs()


@router.post("/new")
async def new_cart(keep_device_session: bool = True, till=Depends(get_till)):
    try:
        cart_id = till.new_cart(keep_device_session)
    except TillError as exc:
        raise http_error(exc)
    return {"active_id": cart_id, "tabs": till.tabs()}


@router.post("/{cart_id}/switch")
async def switch_cart(cart_id: str, till=Depends(get_till)):
    try:
        switched = till.switch_to(cart_id)
    except TillError as exc:
        raise http_error(exc)
    # Destino inexistente: no es error, la caja queda igual
    return {"switched": switched, "active_id": till.carts.active_id}


@router.delete("/{cart_id}")
async def close_cart(cart_id: str, till=Depends(get_till)):
    if cart_id == till.carts.active_id:
        raise HTTPException(status_code=409, detail="Cannot close the active cart")
    return {"closed": till.close_cart(cart_id)}

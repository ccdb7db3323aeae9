from fastapi import APIRouter, Body, Depends, Query

from till.core.deps import get_till, http_error
from till.core.errors import TillError
from till.core.schemas import AddLineIn, BindLotIn, LineEditIn, SelectionIn, TenderIn

# Todas las rutas son async: la caja se muta solo desde el event loop (sin hilos compitiendo)
router = APIRouter(prefix="/till", tags=["till"])


@router.get("")
async def get_till_view(till=Depends(get_till)):
    return till.view()


@router.put("/selection")
async def put_selection(payload: SelectionIn = Body(...), till=Depends(get_till)):
    try:
        till.select(payload.device, payload.session, payload.customer)
    except TillError as exc:
        raise http_error(exc)
    return till.view()


# ---------- Líneas ----------

@router.post("/lines")
async def add_line(payload: AddLineIn = Body(...), till=Depends(get_till)):
    try:
        qty = await till.add_product(payload.product, payload.lot)
    except TillError as exc:
        raise http_error(exc)
    return {"product_id": payload.product.id, "qty": qty}


@router.patch("/lines/{product_id}")
async def edit_line(product_id: str, payload: LineEditIn = Body(...), till=Depends(get_till)):
    try:
        if payload.qty is not None:
            till.set_qty(product_id, payload.qty)
        if payload.price is not None:
            till.set_price(product_id, payload.price)
    except TillError as exc:
        raise http_error(exc)
    return till.view()


@router.delete("/lines/{product_id}")
async def delete_line(product_id: str, till=Depends(get_till)):
    try:
        till.remove_line(product_id)
    except TillError as exc:
        raise http_error(exc)
    return till.view()


@router.get("/lines/{product_id}/lots")
async def list_lots(product_id: str, till=Depends(get_till)):
    return {"product_id": product_id, "lots": await till.lots_for_line(product_id)}


@router.put("/lines/{product_id}/lot")
async def bind_lot(product_id: str, payload: BindLotIn = Body(...), till=Depends(get_till)):
    try:
        till.bind_lot(product_id, payload.lot)
    except TillError as exc:
        raise http_error(exc)
    return till.view()


# ---------- Tender / tasa / cambio ----------

@router.put("/tender")
async def put_tender(payload: TenderIn = Body(...), till=Depends(get_till)):
    try:
        till.set_tender(payload.usd_amount, payload.sos_native)
    except TillError as exc:
        raise http_error(exc)
    return till.view()


@router.post("/rate/refresh")
async def refresh_rate(till=Depends(get_till)):
    try:
        rate = await till.refresh_rate()
    except TillError as exc:
        raise http_error(exc)
    return {"rate": rate}


@router.post("/exchange/accept")
async def accept_exchange(till=Depends(get_till)):
    try:
        preview = till.accept_exchange()
    except TillError as exc:
        raise http_error(exc)
    return {"accepted": True, "preview": preview}


@router.post("/exchange/rounding")
async def toggle_exchange_rounding(till=Depends(get_till)):
    try:
        mode = till.toggle_exchange_rounding()
    except TillError as exc:
        raise http_error(exc)
    return {"rounding": mode, "preview": till.preview()}


@router.post("/sos-target/rounding")
async def toggle_sos_target_rounding(till=Depends(get_till)):
    try:
        mode = till.toggle_sos_target_rounding()
    except TillError as exc:
        raise http_error(exc)
    return {"rounding": mode, "summary": till.summary()}


# ---------- Cobro ----------

@router.post("/checkout")
async def checkout(till=Depends(get_till)):
    try:
        return await till.checkout()
    except TillError as exc:
        raise http_error(exc)


@router.delete("/checkout")
async def abandon_exchange(till=Depends(get_till)):
    sale_id = till.abandon_exchange()
    return {"abandoned": sale_id is not None, "sale_id": sale_id}


@router.get("/audit")
async def audit(limit: int = Query(50, ge=1, le=500), till=Depends(get_till)):
    """Últimos eventos de cobro (venta / cambio) para conciliar a mano."""
    return {"items": till.audit_tail(limit)}

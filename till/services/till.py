"""
TILL (estado vivo de una caja + orquestación del cobro)

Responsabilidades:
- Único mutador del carrito activo: selección, líneas, tender, tasa.
- Deriva en cada cambio: conciliación, vista previa de cambio, bloqueo por
  doble tender, y re-deriva `exchange_accepted`.
- Estaciona / reanuda carritos (snapshot completo) vía CartManager.
- Cobro: primero la venta, después el cambio. NO son atómicos: el progreso
  queda en `pending` para reintentar solo la mitad que falló.

Reglas:
- Sin tasa contable positiva no se acepta tender (cerrado por defecto).
- Un fallo nunca altera el carrito (salvo la carrera documentada del
  escáner: una búsqueda superada igual aplica su resultado).
"""

from __future__ import annotations

import json
import logging
import time
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, List, Optional

from pydantic import BaseModel
from starlette.concurrency import run_in_threadpool

from till.core.config import Settings, settings as default_settings
from till.core.errors import NetworkError, RateUnavailable, ValidationError
from till.core.schemas import (
    CartSnapshot,
    CashSession,
    Customer,
    Device,
    Direction,
    Lot,
    Product,
    Rate,
    RoundingMode,
    ScanFeedback,
    TenderState,
)
from till.services.cart import SaleCart, pick_fefo_lot
from till.services.carts import CartManager, ParkedCarts
from till.services.exchange import (
    ExchangePreview,
    build_exchange_payload,
    build_preview,
    direction_for,
    rounding_direction,
)
from till.services.payments import PaymentSummary, exchange_needed, reconcile, toggle_rounding
from till.services.scan import ScanGuard, ScanIntake, ScanOutcome
from till.utils.atomic_file import append_jsonl_atomic, read_jsonl
from till.utils.money import ZERO, json_num, money, n, sos_int, usd_ceil2

logger = logging.getLogger(__name__)

# Tope de lo que cabe en un cajón: más es un error de tecleo
MAX_TENDER_USD = Decimal("1000000000")
MAX_TENDER_SOS = Decimal("10000000000000")


class SettlementProgress(BaseModel):
    key: str
    cart_id: str
    sale_body: dict
    exchange_body: Optional[dict] = None
    sale_id: Optional[str] = None
    sale_posted: bool = False
    exchange_posted: bool = False


class Till:
    def __init__(
        self,
        client,
        parked: ParkedCarts,
        cfg: Settings = default_settings,
        clock: Callable[[], float] = time.time,
        scan_clock: Callable[[], float] = time.monotonic,
    ):
        self.client = client
        self.cfg = cfg
        self._clock = clock
        self.eps = Decimal(cfg.usd_epsilon)

        self.cart = SaleCart(lots_loader=getattr(client, "get_lots", None))
        self.carts = CartManager(parked, cfg.first_cart_id)

        self.device: Optional[Device] = None
        self.session: Optional[CashSession] = None
        self.customer: Optional[Customer] = None
        self.tender = TenderState()
        self.rate = Rate()
        self.exchange_accepted = False
        self.exchange_rounding = RoundingMode.AUTO
        self.sos_target_rounding = RoundingMode.AUTO
        self.scan_feedback: Optional[ScanFeedback] = None
        self.beep_tick = 0
        self.created_at = datetime.now(timezone.utc)

        self.pending: Optional[SettlementProgress] = None
        self._retry_key: Optional[tuple] = None

        self.scan_guard = ScanGuard(cfg.scan_lock_ms, cfg.scan_dedup_ms, scan_clock)
        self.scanner = ScanIntake(self.scan_guard, self._lookup, self.add_product, self._set_feedback)

        self._accept_fp = None
        self._round_fp = self._rounding_fingerprint()

    # ============================================================
    # DERIVADOS
    # ============================================================

    def summary(self) -> PaymentSummary:
        return reconcile(
            self.cart.lines,
            self.rate,
            self.tender,
            self.sos_target_rounding,
            rate_source=self.cfg.pricing_rate,
            eps=self.eps,
            step=self.cfg.sos_step,
        )

    @staticmethod
    def exchange_offered(s: PaymentSummary) -> bool:
        return s.single_tender_overpay and s.exchange_extra_usd > 0

    def preview(self, s: Optional[PaymentSummary] = None) -> Optional[ExchangePreview]:
        s = s or self.summary()
        if not self.exchange_offered(s):
            return None
        direction = direction_for(s.has_usd, s.has_sos)
        return build_preview(s.exchange_extra_usd, direction, self.rate, self.exchange_rounding, self.cfg.sos_step)

    @property
    def payment_entry_enabled(self) -> bool:
        return self.rate.available

    @property
    def current_feedback(self) -> Optional[ScanFeedback]:
        fb = self.scan_feedback
        if fb is not None and fb.expires_at is not None and fb.expires_at <= self._clock():
            self.scan_feedback = None
            return None
        return fb

    def _accept_fingerprint(self, s: Optional[PaymentSummary] = None) -> tuple:
        s = s or self.summary()
        return (
            self.tender.usd_amount,
            self.tender.sos_native,
            (self.rate.accounting, self.rate.sell, self.rate.buy),
            len(self.cart.lines),
            s.total_usd,
        )

    def _rounding_fingerprint(self, s: Optional[PaymentSummary] = None) -> tuple:
        s = s or self.summary()
        return (s.exchange_extra_usd, direction_for(s.has_usd, s.has_sos), self.rate.sell, self.rate.accounting)

    def _sync(self) -> None:
        """Tras cada mutación: invalida aceptación y modo de redondeo si cambió su entrada."""
        s = self.summary()
        if self.exchange_accepted and self._accept_fingerprint(s) != self._accept_fp:
            self.exchange_accepted = False
            self._accept_fp = None
        rfp = self._rounding_fingerprint(s)
        if rfp != self._round_fp:
            self.exchange_rounding = RoundingMode.AUTO
            self._round_fp = rfp

    def _guard_pending(self) -> None:
        if self.pending is not None:
            raise ValidationError(
                f"Sale {self.pending.sale_id} already posted; retry checkout to finish the exchange."
            )

    # ============================================================
    # SELECCIÓN / TASA
    # ============================================================

    def select(
        self,
        device: Optional[Device] = None,
        session: Optional[CashSession] = None,
        customer: Optional[Customer] = None,
    ) -> None:
        self._guard_pending()
        if device is not None:
            if self.device is None or device.id != self.device.id:
                self.session = None  # la sesión pertenece al dispositivo
            self.device = device
        if session is not None:
            self.session = session
        if customer is not None:
            self.customer = customer

    async def refresh_rate(self) -> Rate:
        self._guard_pending()
        try:
            rate = await run_in_threadpool(self.client.get_latest_rate)
        except (RateUnavailable, NetworkError) as exc:
            # Nunca seguir con una tasa vieja o en cero: se deshabilita el cobro
            logger.warning("no exchange rate available (%s); payment entry disabled", exc)
            self.rate = Rate()
            self._sync()
            raise
        self.rate = rate
        self._sync()
        return rate

    async def bootstrap(self) -> None:
        """Valores por defecto de una caja nueva: primer dispositivo, su sesión abierta y la tasa."""
        try:
            devices = await run_in_threadpool(self.client.get_devices)
            sessions = await run_in_threadpool(self.client.get_open_sessions)
        except NetworkError as exc:
            logger.warning("could not load devices/sessions: %s", exc)
        else:
            if self.device is None and devices:
                self.device = devices[0]
            if self.session is None and sessions:
                mine = [x for x in sessions if self.device and x.device_id == self.device.id]
                self.session = (mine or sessions)[0]
        try:
            await self.refresh_rate()
        except (RateUnavailable, NetworkError):
            pass  # ya registrado; la caja arranca con el cobro deshabilitado

    # ============================================================
    # LÍNEAS
    # ============================================================

    async def add_product(self, product: Product, lot: Optional[Lot] = None) -> int:
        self._guard_pending()
        is_new = all(l.product_id != product.id for l in self.cart.lines)
        if is_new and lot is None:
            lots = await run_in_threadpool(self.cart.load_lots, product.id)
            lot = pick_fefo_lot(lots)
        qty = self.cart.add_line_and_get_new_qty(product, lot)
        self._sync()
        return qty

    def set_qty(self, product_id: str, v) -> None:
        self._guard_pending()
        self.cart.set_qty(product_id, v)
        self._sync()

    def set_price(self, product_id: str, v) -> None:
        self._guard_pending()
        self.cart.set_price(product_id, v)
        self._sync()

    def remove_line(self, product_id: str) -> None:
        self._guard_pending()
        self.cart.remove_line(product_id)
        self._sync()

    async def lots_for_line(self, product_id: str) -> List[Lot]:
        return await run_in_threadpool(self.cart.load_lots, product_id, True)

    def bind_lot(self, product_id: str, lot: Lot) -> None:
        self._guard_pending()
        self.cart.bind_lot(product_id, lot)
        self._sync()

    # ============================================================
    # TENDER / CAMBIO
    # ============================================================

    def set_tender(self, usd_amount: Optional[str] = None, sos_native: Optional[str] = None) -> None:
        self._guard_pending()
        if not self.rate.available:
            raise RateUnavailable("No exchange rate loaded; payment entry is disabled.")
        update = {}
        if usd_amount is not None:
            update["usd_amount"] = usd_amount
        if sos_native is not None:
            update["sos_native"] = sos_native
        candidate = self.tender.model_copy(update=update)
        if abs(n(candidate.usd_amount)) > MAX_TENDER_USD or abs(n(candidate.sos_native)) > MAX_TENDER_SOS:
            raise ValidationError("Payment amount is out of range.")
        self.tender = candidate
        self._sync()

    def accept_exchange(self) -> ExchangePreview:
        self._guard_pending()
        s = self.summary()
        if s.dual_tender_overpay:
            raise ValidationError(
                "Overpaid with both USD & SOS. Reduce one of the payments; exchange is not available."
            )
        preview = self.preview(s)
        if preview is None:
            raise ValidationError("No overpayment to exchange.")
        self.exchange_accepted = True
        self._accept_fp = self._accept_fingerprint(s)
        logger.info(
            "exchange accepted cart=%s dir=%s extra=%s chosen=%s",
            self.carts.active_id, preview.direction.value, money(preview.extra_usd), preview.chosen_native,
        )
        return preview

    def toggle_exchange_rounding(self) -> RoundingMode:
        self._guard_pending()
        preview = self.preview()
        raw = preview.raw_native if preview else 0
        self.exchange_rounding = toggle_rounding(self.exchange_rounding, raw, self.cfg.sos_step)
        # El monto elegido cambió: hay que revisar de nuevo
        self.exchange_accepted = False
        self._accept_fp = None
        return self.exchange_rounding

    def toggle_sos_target_rounding(self) -> RoundingMode:
        self._guard_pending()
        if not self.rate.available:
            raise RateUnavailable("No exchange rate loaded; payment entry is disabled.")
        raw = self.summary().sos_target_raw
        self.tender = self.tender.model_copy(update={"sos_native": "0"})
        self.sos_target_rounding = toggle_rounding(self.sos_target_rounding, raw, self.cfg.sos_step)
        self._sync()
        return self.sos_target_rounding

    # ============================================================
    # ESCÁNER
    # ============================================================

    async def _lookup(self, code: str) -> Product:
        return await run_in_threadpool(self.client.get_product_by_barcode, code)

    def _set_feedback(self, title: str, subtitle: Optional[str], ok: bool, beep: bool) -> None:
        self.scan_feedback = ScanFeedback(
            title=title, subtitle=subtitle, ok=ok,
            expires_at=self._clock() + self.cfg.scan_feedback_ms / 1000.0,
        )
        if beep:
            self.beep_tick += 1

    async def scan(self, code) -> ScanOutcome:
        self._guard_pending()
        return await self.scanner.on_scanned(code)

    # ============================================================
    # SNAPSHOTS / MULTI-CARRITO
    # ============================================================

    def snapshot(self, cart_id: Optional[str] = None, label: Optional[str] = None) -> CartSnapshot:
        cid = cart_id or self.carts.active_id
        return CartSnapshot(
            id=cid,
            label=label or (self.customer.name if self.customer else cid),
            device=self.device,
            session=self.session,
            customer=self.customer,
            lines=[l.model_copy() for l in self.cart.lines],
            usd_amount=self.tender.usd_amount,
            sos_native=self.tender.sos_native,
            rate=self.rate,
            exchange_accepted=self.exchange_accepted,
            exchange_rounding=self.exchange_rounding,
            sos_target_rounding=self.sos_target_rounding,
            scan_feedback=self.current_feedback,
            beep_tick=self.beep_tick,
            created_at=self.created_at,
        )

    def apply_snapshot(self, snap: CartSnapshot) -> None:
        """Hidrata el estado vivo desde `snap`: o entra todo o no cambia nada."""
        lines = [l.model_copy() for l in snap.lines]
        tender = TenderState(usd_amount=snap.usd_amount, sos_native=snap.sos_native)
        s = reconcile(
            lines,
            snap.rate,
            tender,
            snap.sos_target_rounding,
            rate_source=self.cfg.pricing_rate,
            eps=self.eps,
            step=self.cfg.sos_step,
        )

        self.device = snap.device
        self.session = snap.session
        self.customer = snap.customer
        self.cart.lines = lines
        self.tender = tender
        self.rate = snap.rate
        self.exchange_accepted = snap.exchange_accepted
        self.exchange_rounding = snap.exchange_rounding
        self.sos_target_rounding = snap.sos_target_rounding
        self.scan_feedback = snap.scan_feedback
        self.beep_tick = snap.beep_tick
        self.created_at = snap.created_at
        self._accept_fp = self._accept_fingerprint(s) if snap.exchange_accepted else None
        self._round_fp = self._rounding_fingerprint(s)

    def reset(self, keep_device_session: bool = True) -> None:
        self.created_at = datetime.now(timezone.utc)
        self.customer = None
        self.cart.clear()
        self.tender = TenderState()
        self.exchange_accepted = False
        self._accept_fp = None
        self.exchange_rounding = RoundingMode.AUTO
        self.sos_target_rounding = RoundingMode.AUTO
        self.scan_feedback = None
        self.beep_tick = 0
        if not keep_device_session:
            self.device = None
            self.session = None
        self._sync()

    def new_cart(self, keep_device_session: bool = True) -> str:
        self._guard_pending()
        return self.carts.new_cart(self.snapshot(), lambda: self.reset(keep_device_session))

    def switch_to(self, cart_id: str) -> bool:
        self._guard_pending()
        current = self.snapshot()
        try:
            return self.carts.switch_to(cart_id, current, self.apply_snapshot)
        except Exception:
            # La transacción ya volvió atrás; el carrito vivo vuelve a `current`
            logger.exception("switch to cart %s failed; restoring %s", cart_id, self.carts.active_id)
            self.apply_snapshot(current)
            raise

    def close_cart(self, cart_id: str) -> bool:
        return self.carts.close(cart_id)

    def tabs(self) -> dict:
        s = self.summary()
        return {
            "active": {
                "id": self.carts.active_id,
                "label": self.customer.name if self.customer else self.carts.active_id,
                "count": self.cart.item_count,
                "subtotal_usd": s.total_usd,
            },
            "parked": self.carts.tabs(),
        }

    # ============================================================
    # COBRO
    # ============================================================

    def _build_payments(self, s: PaymentSummary, preview: Optional[ExchangePreview]) -> List[dict]:
        send_usd = s.paid_usd_only
        send_sos = s.paid_sos_only
        if self.exchange_accepted and preview is not None:
            # El sobrepago se liquida por cambio: la venta se registra exacta
            if preview.direction is Direction.USD2SOS:
                send_usd = max(ZERO, usd_ceil2(send_usd - preview.extra_usd))
            elif preview.direction is Direction.SOS2USD:
                send_sos = max(0, send_sos - sos_int(preview.extra_usd * s.sale_rate))

        payments = []
        if send_usd > 0:
            payments.append({"method": "CASH_USD", "amount_usd": float(usd_ceil2(send_usd))})
        if send_sos > 0:
            payments.append({"method": "CASH_SOS", "amount_native": int(send_sos), "rate_used": json_num(s.sale_rate)})
        return payments

    def _rounding_meta(self, s: PaymentSummary, exchanging_sos: bool) -> dict:
        meta = {
            "mode": self.sos_target_rounding.value,
            "rate_used": json_num(s.sale_rate),
            "paid_over_target_native": max(0, s.paid_sos_only - s.sos_target),
            "paid_under_target_native": max(0, s.sos_target - s.paid_sos_only),
        }
        if exchanging_sos:
            # Con cambio SOS→USD el backend usa el amount_native del pago tal cual
            return meta
        meta.update(
            {
                "base_needed_native": s.sos_target_raw,
                "chosen_target_native": s.sos_target,
                "diff_native": abs(s.sos_target_diff),
                "direction": rounding_direction(-s.sos_target_diff),
                "paid_native": s.paid_sos_only,
                "base_remaining_native": s.remaining_sos,
                "chosen_remaining_native": s.remaining_sos_rounded,
                "diff_remaining_native": abs(s.remaining_rounding_diff),
                "direction_remaining": rounding_direction(-s.remaining_rounding_diff),
            }
        )
        return meta

    def _prepare_settlement(self) -> SettlementProgress:
        if self.device is None or self.session is None:
            raise ValidationError("Select device and session.")
        if self.customer is None:
            raise ValidationError("Pick a customer.")
        if not self.cart.lines:
            raise ValidationError("Add at least one product line.")
        if not self.rate.available:
            raise RateUnavailable("No exchange rate loaded; payment entry is disabled.")

        s = self.summary()
        preview = self.preview(s)
        if preview is not None and not self.exchange_accepted:
            raise ValidationError("Select exchange to continue.")

        payments = self._build_payments(s, preview)
        if not payments:
            raise ValidationError("Enter a payment amount greater than zero.")

        exchanging = self.exchange_accepted and preview is not None
        sale_body = {
            "device_id": self.device.id,
            "cash_session_id": self.session.id,
            "customer_id": self.customer.id,
            "lines": [
                {
                    "product_id": l.product_id,
                    "qty": l.qty,
                    "unit_price_usd": float(usd_ceil2(l.unit_price_usd)),
                    "batch_id": l.batch_id,
                    "store_id": l.store_id,
                }
                for l in self.cart.lines
            ],
            "payments": payments,
            "status": "COMPLETED",
            "rounding_meta": self._rounding_meta(s, exchanging and preview.direction is Direction.SOS2USD),
        }

        exchange_body = None
        if exchanging:
            try:
                accounts = self.client.get_cash_accounts()
            except NetworkError as exc:
                logger.warning("cash accounts unavailable, posting exchange without methods: %s", exc)
                accounts = []
            exchange_body = build_exchange_payload(preview, accounts, customer_id=self.customer.id)

        # Misma venta que un intento fallido ⇒ misma llave (el ERP deduplica).
        # El cambio no entra: sus cuentas vienen de otra consulta al ERP.
        canon = json.dumps(sale_body, sort_keys=True)
        if self._retry_key and self._retry_key[0] == canon:
            key = self._retry_key[1]
        else:
            key = uuid.uuid4().hex
        self._retry_key = (canon, key)

        return SettlementProgress(
            key=key, cart_id=self.carts.active_id, sale_body=sale_body, exchange_body=exchange_body
        )

    def _audit(self, kind: str, p: SettlementProgress, **extra) -> None:
        append_jsonl_atomic(
            self.cfg.audit_file,
            {"kind": kind, "cart_id": p.cart_id, "idempotency_key": p.key, "sale_id": p.sale_id, **extra},
        )

    async def checkout(self) -> dict:
        if self.pending is None:
            prepared = await run_in_threadpool(self._prepare_settlement)
        else:
            prepared = self.pending
        p = prepared

        if not p.sale_posted:
            try:
                sale_id = await run_in_threadpool(self.client.post_sale, p.sale_body, f"{p.key}-sale")
            except NetworkError as exc:
                self._audit("sale_failed", p, error=exc.message)
                raise
            p.sale_id = sale_id
            p.sale_posted = True
            self.pending = p
            self._audit("sale_posted", p, payments=p.sale_body["payments"])
            if p.exchange_body is not None and sale_id:
                p.exchange_body["sale_id"] = sale_id

        if p.exchange_body is not None and not p.exchange_posted:
            try:
                await run_in_threadpool(self.client.post_exchange, p.exchange_body, f"{p.key}-exchange")
            except NetworkError as exc:
                logger.warning("sale %s saved, exchange failed: %s", p.sale_id, exc)
                self._audit("exchange_failed", p, error=exc.message)
                raise NetworkError(f"Sale saved, exchange failed: {exc.message}") from exc
            p.exchange_posted = True
            self._audit("exchange_posted", p, preview_lines=p.exchange_body["preview_lines"])

        result = {
            "sale_id": p.sale_id,
            "cart_id": p.cart_id,
            "exchange_posted": p.exchange_posted,
            "message": "Change recorded via exchange." if p.exchange_posted else "OK",
        }
        self.pending = None
        self._retry_key = None
        self.reset(keep_device_session=True)
        logger.info("checkout complete cart=%s sale=%s", p.cart_id, p.sale_id)
        return result

    def audit_tail(self, limit: int = 50) -> List[dict]:
        return read_jsonl(self.cfg.audit_file)[-limit:]

    def abandon_exchange(self) -> Optional[str]:
        """Venta guardada pero el cambio no se pudo registrar: se cierra el carrito
        y queda en la bitácora para registrarlo a mano."""
        p = self.pending
        if p is None:
            return None
        self._audit("exchange_abandoned", p, exchange_body=p.exchange_body)
        self.pending = None
        self._retry_key = None
        self.reset(keep_device_session=True)
        return p.sale_id

    # ============================================================
    # VISTA
    # ============================================================

    def view(self) -> dict:
        s = self.summary()
        preview = self.preview(s)
        blocked = s.dual_tender_overpay and s.exchange_extra_usd > 0
        return {
            "cart_id": self.carts.active_id,
            "device": self.device,
            "session": self.session,
            "customer": self.customer,
            "lines": self.cart.lines,
            "tender": self.tender,
            "rate": self.rate,
            "payment_entry_enabled": self.payment_entry_enabled,
            "sos_target_rounding": self.sos_target_rounding,
            "summary": s,
            "exchange": {
                "offered": preview is not None,
                "blocked": blocked,
                "block_reason": (
                    "Exchange isn't available when both USD and SOS are provided. "
                    "Reduce one of the payments so total equals the sale amount."
                    if blocked
                    else None
                ),
                "accepted": self.exchange_accepted,
                "rounding": self.exchange_rounding,
                "preview": preview,
            },
            "exchange_needed": exchange_needed(s, self.exchange_accepted),
            "submit_disabled": (not self.rate.available) or (preview is not None and not self.exchange_accepted),
            "scan_feedback": self.current_feedback,
            "beep_tick": self.beep_tick,
            "tabs": self.tabs(),
            "pending_sale_id": self.pending.sale_id if self.pending else None,
        }

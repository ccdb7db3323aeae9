"""
Conciliación de cobro: líneas + tender (USD / SOS) → totales, saldo y
clasificación del sobrepago.

Reglas:
- Todo lo que se debe en USD se redondea hacia ARRIBA al centavo.
- SOS siempre entero.
- La tasa de venta (`sell` en las fórmulas) es por defecto la tasa contable;
  ver `pricing_rate`.
- Recalcular es puro y barato: se hace en cada cambio de estado.
"""

from __future__ import annotations

from decimal import Decimal
from typing import List

from pydantic import BaseModel

from till.core.schemas import Line, Rate, RoundingMode, TenderState
from till.utils.money import (
    SOS_STEP,
    ZERO,
    calc_rounding_diff,
    round_sos_1000,
    sos_int,
    usd_ceil2,
)

EPS = Decimal("0.01")


class PaymentSummary(BaseModel):
    sale_rate: Decimal
    total_usd: Decimal
    total_sos: int
    paid_usd_only: Decimal
    paid_sos_only: int
    paid_usd_eq: Decimal
    remaining_usd: Decimal
    remaining_sos: int
    extra_usd: Decimal
    has_usd: bool
    has_sos: bool
    single_tender_overpay: bool
    dual_tender_overpay: bool

    # Objetivo en SOS que el cajero pide (solo con lo pagado en USD)
    sos_target_raw: int
    sos_target: int
    sos_target_diff: int
    remaining_sos_rounded: int
    remaining_rounding_diff: int

    # Sobrepago que realmente requiere cambio de divisa
    exchange_extra_usd: Decimal


def pricing_rate(rate: Rate, source: str = "accounting") -> Decimal:
    """Tasa con la que se cotiza la venta y se convierte el tender SOS."""
    return rate.sell if source == "sell" else rate.accounting


def _div(a, b: Decimal) -> Decimal:
    return Decimal(a) / b if b > 0 else ZERO


def rounding_candidates(raw: int, step: int = SOS_STEP):
    return (
        round_sos_1000(raw, "nearest", step),
        round_sos_1000(raw, "down", step),
        round_sos_1000(raw, "up", step),
    )


def toggle_rounding(mode: RoundingMode, raw: int, step: int = SOS_STEP) -> RoundingMode:
    """Toque del cajero: desde auto va al lado que nearest NO eligió; luego alterna."""
    if mode is RoundingMode.AUTO:
        nearest, down, up = rounding_candidates(raw, step)
        nearest_is_down = nearest == down and nearest != up
        return RoundingMode.UP if nearest_is_down else RoundingMode.DOWN
    return RoundingMode.DOWN if mode is RoundingMode.UP else RoundingMode.UP


def line_total(lines: List[Line]) -> Decimal:
    return sum((Decimal(l.qty) * l.unit_price_usd for l in lines), ZERO)


def reconcile(
    lines: List[Line],
    rate: Rate,
    tender: TenderState,
    sos_target_rounding: RoundingMode = RoundingMode.AUTO,
    *,
    rate_source: str = "accounting",
    eps: Decimal = EPS,
    step: int = SOS_STEP,
) -> PaymentSummary:
    sell = pricing_rate(rate, rate_source)
    mode = sos_target_rounding.step_mode

    total_usd = usd_ceil2(line_total(lines))
    total_sos = sos_int(total_usd * sell)

    paid_usd_only = max(ZERO, usd_ceil2(tender.usd_amount))
    paid_sos_only = max(0, sos_int(tender.sos_native))
    paid_usd_eq = usd_ceil2(paid_usd_only + _div(paid_sos_only, sell))

    remaining_usd = usd_ceil2(max(ZERO, total_usd - paid_usd_eq))
    remaining_sos = sos_int(remaining_usd * sell)

    diff = paid_usd_eq - total_usd
    extra_usd = usd_ceil2(diff) if diff > eps else ZERO

    has_usd = paid_usd_only > 0
    has_sos = paid_sos_only > 0
    single_tender_overpay = extra_usd > 0 and has_usd != has_sos
    dual_tender_overpay = extra_usd > 0 and has_usd and has_sos

    usd_still_needed = usd_ceil2(max(ZERO, total_usd - paid_usd_only))
    sos_target_raw = sos_int(usd_still_needed * sell)
    sos_target = round_sos_1000(sos_target_raw, mode, step)
    remaining_sos_rounded = round_sos_1000(remaining_sos, mode, step)

    # Si se pagó en SOS y no se superó el objetivo redondeado, no hay cambio
    exchange_extra_usd = extra_usd
    if has_sos:
        sos_over_target = max(0, paid_sos_only - sos_target)
        if sos_over_target == 0:
            exchange_extra_usd = ZERO
        else:
            exchange_extra_usd = usd_ceil2(min(extra_usd, usd_ceil2(_div(sos_over_target, sell))))

    return PaymentSummary(
        sale_rate=sell,
        total_usd=total_usd,
        total_sos=total_sos,
        paid_usd_only=paid_usd_only,
        paid_sos_only=paid_sos_only,
        paid_usd_eq=paid_usd_eq,
        remaining_usd=remaining_usd,
        remaining_sos=remaining_sos,
        extra_usd=extra_usd,
        has_usd=has_usd,
        has_sos=has_sos,
        single_tender_overpay=single_tender_overpay,
        dual_tender_overpay=dual_tender_overpay,
        sos_target_raw=sos_target_raw,
        sos_target=sos_target,
        sos_target_diff=calc_rounding_diff(sos_target_raw, sos_target),
        remaining_sos_rounded=remaining_sos_rounded,
        remaining_rounding_diff=calc_rounding_diff(remaining_sos, remaining_sos_rounded),
        exchange_extra_usd=exchange_extra_usd,
    )


def exchange_needed(summary: PaymentSummary, accepted: bool) -> bool:
    return summary.exchange_extra_usd > 0 and (summary.dual_tender_overpay or not accepted)

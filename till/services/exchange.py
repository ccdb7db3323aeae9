"""
Cambio de divisa por sobrepago (un solo tender).

- USD2SOS: el cliente entregó USD de más y recibe el cambio en SOS.
  Se cotiza a la tasa `sell` y el SOS se redondea a múltiplos de 1000.
- SOS2USD: el cliente entregó SOS de más y recibe el cambio en USD.
  Se cotiza a la tasa `buy`; el tramo USD solo se redondea al centavo.

La ganancia/pérdida cambiaria SIEMPRE se mide contra la tasa contable (IAR),
nunca contra sell/buy. Perspectiva de la tienda: si entrega más valor del que
recibe es pérdida.
"""

from __future__ import annotations

import re
from decimal import Decimal
from typing import List, Optional, Tuple

from pydantic import BaseModel

from till.core.schemas import Direction, Rate, RoundingMode
from till.utils.money import SOS_STEP, ZERO, json_num, round_sos_1000, sos_int, usd_ceil2


class Leg(BaseModel):
    amount: Decimal
    currency: str


class ExchangePreview(BaseModel):
    direction: Direction
    rounding: RoundingMode
    extra_usd: Decimal
    counter_rate: Decimal
    accounting_rate: Decimal

    raw_native: int
    chosen_native: int
    diff_native: int  # >0 la tienda absorbe, <0 la tienda gana

    customer_pays: Leg
    customer_receives: Leg
    iar: Leg

    fx_gain_usd: Decimal
    fx_loss_usd: Decimal


def direction_for(has_usd: bool, has_sos: bool) -> Optional[Direction]:
    if has_usd and not has_sos:
        return Direction.USD2SOS
    if has_sos and not has_usd:
        return Direction.SOS2USD
    return None


def _div(a, b: Decimal) -> Decimal:
    return Decimal(a) / b if b > 0 else ZERO


def _gain_loss(diff_usd: Decimal) -> Tuple[Decimal, Decimal]:
    if diff_usd > 0:
        return ZERO, usd_ceil2(diff_usd)
    if diff_usd < 0:
        return usd_ceil2(-diff_usd), ZERO
    return ZERO, ZERO


def build_preview(
    extra_usd: Decimal,
    direction: Direction,
    rate: Rate,
    mode: RoundingMode = RoundingMode.AUTO,
    step: int = SOS_STEP,
) -> ExchangePreview:
    extra_usd = usd_ceil2(extra_usd)
    accounting = rate.accounting

    if direction is Direction.USD2SOS:
        counter = rate.sell
        raw = sos_int(extra_usd * counter)
        chosen = round_sos_1000(raw, mode.step_mode, step)
        iar_sos = sos_int(extra_usd * accounting)
        fx_gain, fx_loss = _gain_loss(_div(chosen - iar_sos, accounting))
        customer_pays = Leg(amount=extra_usd, currency="USD")
        customer_receives = Leg(amount=Decimal(chosen), currency="SOS")
        iar = Leg(amount=Decimal(iar_sos), currency="SOS")
    elif direction is Direction.SOS2USD:
        counter = rate.buy
        raw = sos_int(extra_usd * counter)
        chosen = raw
        iar_usd = _div(chosen, accounting)
        fx_gain, fx_loss = _gain_loss(extra_usd - iar_usd if accounting > 0 else ZERO)
        customer_pays = Leg(amount=Decimal(chosen), currency="SOS")
        customer_receives = Leg(amount=extra_usd, currency="USD")
        iar = Leg(amount=usd_ceil2(iar_usd), currency="USD")
    else:
        raise ValueError(f"unknown exchange direction: {direction!r}")

    return ExchangePreview(
        direction=direction,
        rounding=mode,
        extra_usd=extra_usd,
        counter_rate=counter,
        accounting_rate=accounting,
        raw_native=raw,
        chosen_native=chosen,
        diff_native=chosen - raw,
        customer_pays=customer_pays,
        customer_receives=customer_receives,
        iar=iar,
        fx_gain_usd=fx_gain,
        fx_loss_usd=fx_loss,
    )


def pick_cash_accounts(accounts: List[dict]) -> Tuple[Optional[str], Optional[str]]:
    """Nombres de las cuentas CASH_ON_HAND en USD y SOS (o None)."""

    def _find(cur: str) -> Optional[str]:
        for acc in accounts:
            if re.search(cur, str(acc.get("name") or ""), re.IGNORECASE):
                return acc["name"]
        for acc in accounts:
            if acc.get("name") == f"Cash_{cur}":
                return acc["name"]
        return None

    return _find("USD"), _find("SOS")



def rounding_direction(diff_native: int) -> str:
    if diff_native > 0:
        return "LOSS"
    if diff_native < 0:
        return "GAIN"
    return "NONE"


def build_exchange_payload(
    preview: ExchangePreview,
    accounts: List[dict],
    sale_id: Optional[str] = None,
    customer_id: Optional[str] = None,
) -> dict:
    usd_acc, sos_acc = pick_cash_accounts(accounts)
    usd2sos = preview.direction is Direction.USD2SOS

    body = {
        "from_currency": preview.customer_pays.currency,
        "amount": json_num(preview.customer_pays.amount),
        "counter_rate": json_num(preview.counter_rate),
        "accounting_rate": json_num(preview.accounting_rate),
        # from = caja que baja, to = caja que sube
        "from_method": sos_acc if usd2sos else usd_acc,
        "to_method": usd_acc if usd2sos else sos_acc,
        "preview_lines": {
            "customer_pays_shop_receives": {
                "amount": json_num(preview.customer_pays.amount),
                "currency": preview.customer_pays.currency,
            },
            "customer_receives_shop_pays": {
                "amount": json_num(preview.customer_receives.amount),
                "currency": preview.customer_receives.currency,
            },
            "iar": {"amount": json_num(preview.iar.amount), "currency": preview.iar.currency},
            "fx_gain_usd": float(preview.fx_gain_usd),
            "fx_loss_usd": float(preview.fx_loss_usd),
        },
    }
    if usd2sos:
        body["rounding_meta"] = {
            "mode": preview.rounding.value,
            "rate_used": json_num(preview.counter_rate),
            "base_needed_native": preview.raw_native,
            "chosen_target_native": preview.chosen_native,
            "diff_native": abs(preview.diff_native),
            "direction": rounding_direction(preview.diff_native),
        }
    if sale_id:
        body["sale_id"] = sale_id
    if customer_id:
        body["customer_id"] = customer_id
    return body

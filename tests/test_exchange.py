from decimal import Decimal

import pytest

from till.core.schemas import Direction, Rate, RoundingMode
from till.services.exchange import (
    build_exchange_payload,
    build_preview,
    direction_for,
    pick_cash_accounts,
    rounding_direction,
)

RATE = Rate(accounting=Decimal("26000"), sell=Decimal("27000"), buy=Decimal("28000"))
ACCOUNTS = [{"name": "Cash_USD"}, {"name": "Cash_SOS"}]


def test_direction_needs_exactly_one_tender():
    assert direction_for(True, False) is Direction.USD2SOS
    assert direction_for(False, True) is Direction.SOS2USD
    assert direction_for(True, True) is None
    assert direction_for(False, False) is None


def test_scenario_a_preview():
    p = build_preview(Decimal("5.00"), Direction.USD2SOS, RATE)
    assert p.raw_native == 135000
    assert p.chosen_native == 135000
    assert p.diff_native == 0
    assert p.customer_pays.amount == Decimal("5.00") and p.customer_pays.currency == "USD"
    assert p.customer_receives.amount == 135000 and p.customer_receives.currency == "SOS"
    # IAR 130000: la tienda entrega 5000 SOS de más contra la tasa contable
    assert p.iar.amount == 130000
    assert p.fx_loss_usd == Decimal("0.20")
    assert p.fx_gain_usd == 0


def test_usd2sos_rounding_mode_moves_chosen_amount():
    extra = Decimal("5.02")  # 5.02 * 27000 = 135540
    auto = build_preview(extra, Direction.USD2SOS, RATE)
    assert auto.raw_native == 135540
    assert auto.chosen_native == 136000
    assert auto.diff_native == 460
    down = build_preview(extra, Direction.USD2SOS, RATE, RoundingMode.DOWN)
    assert down.chosen_native == 135000
    assert down.diff_native == -540


def test_sos2usd_preview_has_no_rounding():
    p = build_preview(Decimal("1.54"), Direction.SOS2USD, RATE, RoundingMode.UP)
    assert p.raw_native == p.chosen_native == 43120
    assert p.diff_native == 0
    assert p.customer_receives.amount == Decimal("1.54")
    assert p.iar.currency == "USD"
    assert p.fx_gain_usd == Decimal("0.12")
    assert p.fx_loss_usd == 0


def test_gain_loss_measured_against_accounting_rate():
    # sell == accounting y 1000 exactos: ni ganancia ni pérdida
    flat = Rate(accounting=Decimal("27000"), sell=Decimal("27000"), buy=Decimal("27000"))
    p = build_preview(Decimal("5.00"), Direction.USD2SOS, flat)
    assert p.fx_gain_usd == 0 and p.fx_loss_usd == 0


def test_unknown_direction_raises():
    with pytest.raises(ValueError):
        build_preview(Decimal("1"), None, RATE)


def test_pick_cash_accounts():
    assert pick_cash_accounts([{"name": "Caja usd"}, {"name": "Caja SOS"}]) == ("Caja usd", "Caja SOS")
    assert pick_cash_accounts([{"name": "Petty"}]) == (None, None)


def test_usd2sos_payload():
    p = build_preview(Decimal("5.02"), Direction.USD2SOS, RATE)
    body = build_exchange_payload(p, ACCOUNTS, sale_id="s-1", customer_id="c1")
    assert body["from_currency"] == "USD"
    assert body["amount"] == 5.02
    assert body["counter_rate"] == 27000
    assert body["accounting_rate"] == 26000
    # entra USD a la caja, sale SOS
    assert body["from_method"] == "Cash_SOS"
    assert body["to_method"] == "Cash_USD"
    assert body["preview_lines"]["customer_receives_shop_pays"] == {"amount": 136000, "currency": "SOS"}
    assert body["rounding_meta"]["chosen_target_native"] == 136000
    assert body["rounding_meta"]["diff_native"] == 460
    assert body["rounding_meta"]["direction"] == "LOSS"
    assert body["sale_id"] == "s-1" and body["customer_id"] == "c1"


def test_sos2usd_payload_has_no_rounding_meta():
    p = build_preview(Decimal("1.54"), Direction.SOS2USD, RATE)
    body = build_exchange_payload(p, ACCOUNTS)
    assert body["from_currency"] == "SOS"
    assert body["amount"] == 43120
    assert body["from_method"] == "Cash_USD"
    assert body["to_method"] == "Cash_SOS"
    assert "rounding_meta" not in body
    assert "sale_id" not in body


def test_rounding_direction():
    assert rounding_direction(10) == "LOSS"
    assert rounding_direction(-10) == "GAIN"
    assert rounding_direction(0) == "NONE"

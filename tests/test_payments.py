from decimal import Decimal

from till.core.schemas import Line, Rate, RoundingMode, TenderState
from till.services.payments import exchange_needed, reconcile, toggle_rounding

RATE = Rate(accounting=Decimal("26000"), sell=Decimal("27000"), buy=Decimal("28000"))


def _lines(*pairs):
    return [
        Line(product_id=f"p{i}", name=f"P{i}", qty=qty, unit_price_usd=Decimal(price))
        for i, (qty, price) in enumerate(pairs)
    ]


def test_scenario_a_usd_overpay():
    s = reconcile(_lines((1, "10.00")), RATE, TenderState(usd_amount="15.00", sos_native="0"))
    assert s.total_usd == Decimal("10.00")
    assert s.extra_usd == Decimal("5.00")
    assert s.single_tender_overpay and not s.dual_tender_overpay
    assert s.exchange_extra_usd == Decimal("5.00")
    assert s.remaining_usd == 0


def test_total_is_ceiled_to_the_cent():
    s = reconcile(_lines((3, "0.335")), RATE, TenderState())
    assert s.total_usd == Decimal("1.01")
    assert s.total_sos == 26260


def test_partial_payment_leaves_remaining():
    s = reconcile(_lines((2, "5.00")), RATE, TenderState(usd_amount="4"))
    assert s.remaining_usd == Decimal("6.00")
    assert s.remaining_sos == 156000
    assert s.extra_usd == 0
    assert not exchange_needed(s, accepted=False)


def test_dual_tender_overpay_blocks_exchange():
    s = reconcile(_lines((1, "10.00")), RATE, TenderState(usd_amount="8", sos_native="100000"))
    assert s.has_usd and s.has_sos
    assert s.dual_tender_overpay and not s.single_tender_overpay
    assert s.extra_usd == Decimal("1.85")
    assert exchange_needed(s, accepted=True)


def test_epsilon_overpay_is_not_an_overpay():
    s = reconcile(_lines((1, "10.00")), RATE, TenderState(usd_amount="10.01"))
    assert s.extra_usd == 0
    assert not s.single_tender_overpay


def test_sos_paid_up_to_rounded_target_needs_no_exchange():
    # 10.37 * 26000 = 269620 → objetivo auto 270000
    s = reconcile(_lines((1, "10.37")), RATE, TenderState(sos_native="270000"))
    assert s.sos_target_raw == 269620
    assert s.sos_target == 270000
    assert s.extra_usd > 0
    assert s.exchange_extra_usd == 0
    assert not exchange_needed(s, accepted=False)


def test_sos_overpay_exchange_is_capped_by_target():
    s = reconcile(_lines((1, "10.00")), RATE, TenderState(sos_native="300000"))
    assert s.extra_usd == Decimal("1.54")
    assert s.exchange_extra_usd == Decimal("1.54")
    assert exchange_needed(s, accepted=False)
    assert not exchange_needed(s, accepted=True)


def test_sos_target_rounding_modes():
    lines = _lines((1, "10.37"))
    down = reconcile(lines, RATE, TenderState(), RoundingMode.DOWN)
    assert down.sos_target == 269000
    assert down.sos_target_diff == -620
    up = reconcile(lines, RATE, TenderState(), RoundingMode.UP)
    assert up.sos_target == 270000


def test_pricing_rate_can_use_sell():
    s = reconcile(_lines((1, "10.00")), RATE, TenderState(), rate_source="sell")
    assert s.sale_rate == Decimal("27000")
    assert s.total_sos == 270000


def test_negative_tender_is_clamped():
    s = reconcile(_lines((1, "10.00")), RATE, TenderState(usd_amount="-20", sos_native="-5"))
    assert s.paid_usd_only == 0 and s.paid_sos_only == 0
    assert s.remaining_usd == Decimal("10.00")


def test_zero_rate_never_divides():
    s = reconcile(_lines((1, "10.00")), Rate(), TenderState(sos_native="50000"))
    assert s.paid_usd_eq == 0
    assert s.total_sos == 0


def test_toggle_rounding_goes_to_the_other_side():
    assert toggle_rounding(RoundingMode.AUTO, 135400) is RoundingMode.UP
    assert toggle_rounding(RoundingMode.AUTO, 135600) is RoundingMode.DOWN
    assert toggle_rounding(RoundingMode.UP, 135600) is RoundingMode.DOWN
    assert toggle_rounding(RoundingMode.DOWN, 135600) is RoundingMode.UP

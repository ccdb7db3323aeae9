from decimal import Decimal

from till.utils.money import calc_rounding_diff, json_num, money, n, round_sos_1000, sos_int, usd_ceil2


def test_n_is_tolerant():
    assert n("12,5") == Decimal("12.5")
    assert n(" 7 ") == Decimal("7")
    assert n("abc") == 0
    assert n(None, 1) == 1
    assert n("NaN", 3) == 3
    assert n("Infinity") == 0
    assert n(True) == 0


def test_usd_always_rounds_up_to_the_cent():
    assert usd_ceil2("1.001") == Decimal("1.01")
    assert usd_ceil2("1.00") == Decimal("1.00")
    assert usd_ceil2(Decimal("0.999")) == Decimal("1.00")
    assert money("3.141") == "3.15"


def test_sos_int_half_away_from_zero():
    assert sos_int("2.5") == 3
    assert sos_int("2.4") == 2
    assert sos_int("-2.5") == -3


def test_round_sos_1000_modes():
    assert round_sos_1000(135500) == 136000
    assert round_sos_1000(135499) == 135000
    assert round_sos_1000(135001, "up") == 136000
    assert round_sos_1000(135999, "down") == 135000
    assert round_sos_1000(135000, "up") == 135000
    # modo desconocido → nearest
    assert round_sos_1000(135600, "sideways") == 136000


def test_round_sos_1000_bounds():
    for raw in (1, 499, 500, 999, 1001, 123456, 987654):
        nearest = round_sos_1000(raw)
        up = round_sos_1000(raw, "up")
        down = round_sos_1000(raw, "down")
        assert abs(nearest - raw) <= 500
        assert 0 <= up - raw < 1000
        assert 0 <= raw - down < 1000
        assert nearest % 1000 == up % 1000 == down % 1000 == 0


def test_rounding_diff_and_json_num():
    assert calc_rounding_diff(269620, 270000) == 380
    assert calc_rounding_diff(269620, 269000) == -620
    assert json_num(Decimal("26000")) == 26000 and isinstance(json_num(Decimal("26000")), int)
    assert json_num(Decimal("1.54")) == 1.54


def test_huge_amounts_do_not_raise():
    assert usd_ceil2("1e30") == Decimal("1e30")
    assert sos_int("1e30") == 10 ** 30
    assert round_sos_1000("1e30") == 10 ** 30
    # fuera de rango se trata como ilegible
    assert n("1e1000") == 0
    assert usd_ceil2("1e1000") == 0

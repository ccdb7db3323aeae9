from __future__ import annotations

from decimal import (
    ROUND_CEILING,
    ROUND_FLOOR,
    ROUND_HALF_UP,
    ROUND_UP,
    Decimal,
    InvalidOperation,
    localcontext,
)

__all__ = [
    "ZERO", "CENT", "SOS_STEP",
    "n", "usd_ceil2", "sos_int", "round_sos_1000", "calc_rounding_diff", "money", "json_num",
]

ZERO = Decimal("0")
CENT = Decimal("0.01")
SOS_STEP = 1000

# Más de 10**100 no es un monto: se trata como texto ilegible
MAX_ADJUSTED = 100

_STEP_ROUNDING = {"up": ROUND_CEILING, "down": ROUND_FLOOR, "nearest": ROUND_HALF_UP}


def n(v, d=0) -> Decimal:
    """
    Parseo tolerante: acepta coma decimal ("12,5") y espacios.
    Si no se puede (o no es finito, o es absurdamente grande) devuelve el default `d`.
    """
    if isinstance(v, Decimal):
        x = v
    elif v is None or isinstance(v, bool):
        return Decimal(str(d))
    else:
        s = str(v).strip().replace(",", ".", 1)
        try:
            x = Decimal(s)
        except (InvalidOperation, ValueError):
            return Decimal(str(d))
    if not x.is_finite() or x.adjusted() > MAX_ADJUSTED:
        return Decimal(str(d))
    return x


def _quantize(x: Decimal, exp: Decimal, rounding: str) -> Decimal:
    # quantize exige que el resultado quepa en la precisión del contexto
    with localcontext() as ctx:
        ctx.prec = max(28, x.adjusted() - exp.as_tuple().exponent + 2)
        return x.quantize(exp, rounding=rounding)


def usd_ceil2(v) -> Decimal:
    # Hacia arriba en valor absoluto: la tienda nunca pierde un centavo
    return _quantize(n(v), CENT, ROUND_UP)


def sos_int(v) -> int:
    return int(_quantize(n(v), Decimal(1), ROUND_HALF_UP))


def round_sos_1000(v, mode: str = "nearest", step: int = SOS_STEP) -> int:
    mode = getattr(mode, "value", mode)
    rounding = _STEP_ROUNDING.get(mode, ROUND_HALF_UP)
    x = n(v)
    with localcontext() as ctx:
        ctx.prec = max(28, x.adjusted() + 2)
        units = x / step
    return int(_quantize(units, Decimal(1), rounding)) * step


def calc_rounding_diff(original, rounded) -> int:
    return sos_int(n(rounded) - n(original))


def money(v) -> str:
    return format(usd_ceil2(v), ".2f")


def json_num(v: Decimal):
    """Decimal → int si es entero, si no float (cuerpos JSON hacia el ERP)."""
    return int(v) if v == v.to_integral_value() else float(v)

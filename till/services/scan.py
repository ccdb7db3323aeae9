"""
Entrada del escáner: un escaneo físico → exactamente un incremento de línea.

El hardware dispara varios eventos por escaneo y se queda "pegado" sobre el
mismo código. Dos guardas combinadas:
  a) candado duro (~700 ms) al aceptar cualquier código;
  b) mapa código → último instante aceptado (ventana ~1000 ms) como red extra.

Un ScanGuard por superficie de escaneo; nada de estado a nivel de módulo.
"""

from __future__ import annotations

import logging
import time
from typing import Awaitable, Callable, Dict, Optional

from pydantic import BaseModel

from till.core.errors import LookupNotFound, NetworkError
from till.core.schemas import Product

logger = logging.getLogger(__name__)


class ScanGuard:
    def __init__(self, lock_ms: int = 700, dedup_ms: int = 1000, clock: Callable[[], float] = time.monotonic):
        self.lock_s = lock_ms / 1000.0
        self.dedup_s = dedup_ms / 1000.0
        self._clock = clock
        self._locked_until = 0.0
        self._last_by_code: Dict[str, float] = {}

    @property
    def locked(self) -> bool:
        return self._clock() < self._locked_until

    def check(self, code: str) -> bool:
        if self.locked:
            return False
        code = (code or "").strip()
        if not code:
            return False
        now = self._clock()
        last = self._last_by_code.get(code)
        if last is not None and now - last < self.dedup_s:
            return False
        self._last_by_code[code] = now
        if len(self._last_by_code) > 256:
            self._last_by_code = {c: t for c, t in self._last_by_code.items() if now - t < self.dedup_s}
        return True

    def lock(self) -> None:
        self._locked_until = self._clock() + self.lock_s


class ScanOutcome(BaseModel):
    code: str
    accepted: bool
    ok: bool = False
    product_id: Optional[str] = None
    name: Optional[str] = None
    qty: Optional[int] = None
    error: Optional[str] = None


FeedbackFn = Callable[[str, Optional[str], bool, bool], None]


class ScanIntake:
    def __init__(
        self,
        guard: ScanGuard,
        lookup: Callable[[str], Awaitable[Product]],
        add_line: Callable[[Product], Awaitable[int]],
        on_feedback: FeedbackFn,
    ):
        self.guard = guard
        self._lookup = lookup
        self._add_line = add_line
        self._feedback = on_feedback

    async def on_scanned(self, raw) -> ScanOutcome:
        code = str(raw if raw is not None else "").strip()
        if not self.guard.check(code):
            return ScanOutcome(code=code, accepted=False)

        # Candado inmediato: bloquea el segundo callback del mismo escaneo
        self.guard.lock()
        self._feedback(f"Scanned: {code}", "Adding…", True, False)

        try:
            product = await self._lookup(code)
        except LookupNotFound:
            logger.info("barcode %s not found", code)
            self._feedback("Not found", code, False, True)
            return ScanOutcome(code=code, accepted=True, error="not_found")
        except NetworkError as exc:
            logger.warning("barcode lookup failed for %s: %s", code, exc)
            self._feedback("Scan failed", code, False, True)
            return ScanOutcome(code=code, accepted=True, error=exc.message)

        qty = await self._add_line(product)
        self._feedback(product.display_name, f"Qty: {qty}", True, True)
        return ScanOutcome(
            code=code, accepted=True, ok=True,
            product_id=product.id, name=product.display_name, qty=qty,
        )

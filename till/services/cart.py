from __future__ import annotations

import logging
from typing import Callable, Dict, List, Optional

from till.core.errors import NetworkError
from till.core.schemas import Line, Lot, Product
from till.utils.money import ZERO, n, usd_ceil2

logger = logging.getLogger(__name__)


def pick_fefo_lot(lots: List[Lot]) -> Optional[Lot]:
    """Primer lote con existencias; si ninguno tiene, el primero de la lista."""
    if not lots:
        return None
    for lot in lots:
        if lot.on_hand > 0:
            return lot
    return lots[0]


class SaleCart:
    """
    Líneas del carrito activo, indexadas por product_id.

    El lote es opcional: una línea sin lote es válida. `lots_loader` resuelve
    los lotes disponibles de un producto (tienda + lote + caducidad + existencias).
    """

    def __init__(self, lots_loader: Optional[Callable[[str], List[Lot]]] = None):
        self.lines: List[Line] = []
        self._lots_loader = lots_loader
        self._lots_cache: Dict[str, List[Lot]] = {}

    def _find(self, product_id: str) -> Optional[int]:
        for idx, line in enumerate(self.lines):
            if line.product_id == product_id:
                return idx
        return None

    def load_lots(self, product_id: str, bust_cache: bool = False) -> List[Lot]:
        if not bust_cache and product_id in self._lots_cache:
            return self._lots_cache[product_id]
        if self._lots_loader is None:
            return []
        try:
            lots = list(self._lots_loader(product_id))
        except NetworkError as exc:
            logger.warning("lots lookup failed for product %s: %s", product_id, exc)
            return []
        self._lots_cache[product_id] = lots
        return lots

    def add_line_and_get_new_qty(self, product: Product, lot: Optional[Lot] = None) -> int:
        idx = self._find(product.id)
        if idx is not None:
            line = self.lines[idx]
            qty = max(1, line.qty + 1)
            self.lines[idx] = line.model_copy(update={"qty": qty})
            return qty

        line = Line(
            product_id=product.id,
            name=product.display_name,
            qty=1,
            unit_price_usd=max(ZERO, usd_ceil2(product.price_usd or 0)),
        )
        self.lines.append(line)
        if lot is not None:
            self.bind_lot(product.id, lot)
        return 1

    def set_qty(self, product_id: str, v) -> None:
        idx = self._find(product_id)
        if idx is None:
            return
        qty = max(1, int(n(v, 1)))
        self.lines[idx] = self.lines[idx].model_copy(update={"qty": qty})

    def set_price(self, product_id: str, v) -> None:
        idx = self._find(product_id)
        if idx is None:
            return
        price = max(ZERO, usd_ceil2(v))
        self.lines[idx] = self.lines[idx].model_copy(update={"unit_price_usd": price})

    def remove_line(self, product_id: str) -> None:
        self.lines = [l for l in self.lines if l.product_id != product_id]

    def bind_lot(self, product_id: str, lot: Lot) -> None:
        idx = self._find(product_id)
        if idx is None:
            return
        self.lines[idx] = self.lines[idx].model_copy(
            update={
                "batch_id": lot.batch_id,
                "store_id": lot.store_id,
                "expiry_date": lot.expiry_date,
                "lot_summary": lot.summary,
            }
        )

    def replace(self, lines: List[Line]) -> None:
        self.lines = [l.model_copy() for l in lines]

    def clear(self) -> None:
        self.lines = []
        self._lots_cache.clear()

    @property
    def item_count(self) -> int:
        return sum(l.qty for l in self.lines)

"""
Multi-carrito: un carrito ACTIVO (estado vivo del till) y cero o más
carritos ESTACIONADOS (snapshots completos) en la tabla parked_cart.

Invariante: el id activo nunca está en el conjunto estacionado.
Estacionar-y-reanudar es UNA transición: una sola transacción de BD.
"""

from __future__ import annotations

import logging
import string
from decimal import Decimal
from typing import Callable, List, Optional, Set

from sqlalchemy.orm import Session

from till.core.errors import ValidationError
from till.core.schemas import CartSnapshot
from till.models.cart import ParkedCart
from till.utils.money import usd_ceil2

logger = logging.getLogger(__name__)

LABELS = string.ascii_uppercase


class ParkedCarts:
    """Mapa id → CartSnapshot respaldado por SQLAlchemy (upsert / remove / get)."""

    def __init__(self, session_factory):
        self._session_factory = session_factory

    def begin(self):
        return self._session_factory.begin()

    @staticmethod
    def _load(row: ParkedCart) -> CartSnapshot:
        return CartSnapshot.model_validate_json(row.payload)

    def upsert(self, snap: CartSnapshot, db: Optional[Session] = None) -> None:
        if db is None:
            with self.begin() as db:
                return self.upsert(snap, db)
        row = db.get(ParkedCart, snap.id)
        if row is None:
            row = ParkedCart(id=snap.id)
            db.add(row)
        row.label = snap.label
        row.created_at = snap.created_at
        row.payload = snap.model_dump_json()
        db.flush()

    def remove(self, cart_id: str, db: Optional[Session] = None) -> Optional[CartSnapshot]:
        if db is None:
            with self.begin() as db:
                return self.remove(cart_id, db)
        row = db.get(ParkedCart, cart_id)
        if row is None:
            return None
        snap = self._load(row)
        db.delete(row)
        db.flush()
        return snap

    def get(self, cart_id: str) -> Optional[CartSnapshot]:
        with self._session_factory() as db:
            row = db.get(ParkedCart, cart_id)
            return self._load(row) if row else None

    def all(self) -> List[CartSnapshot]:
        with self._session_factory() as db:
            rows = db.query(ParkedCart).order_by(ParkedCart.created_at, ParkedCart.id).all()
            return [self._load(r) for r in rows]

    def ids(self, db: Optional[Session] = None) -> Set[str]:
        if db is None:
            with self._session_factory() as db:
                return self.ids(db)
        return {cid for (cid,) in db.query(ParkedCart.id).all()}


class CartManager:
    def __init__(self, parked: ParkedCarts, active_id: str = "A"):
        self.parked = parked
        self.active_id = active_id
        # Tras un reinicio el id inicial puede seguir estacionado
        if active_id in self.parked.ids():
            self.active_id = self.next_label()
            logger.info("cart %s is parked; starting on %s", active_id, self.active_id)

    def next_label(self, db: Optional[Session] = None) -> str:
        used = self.parked.ids(db) | {self.active_id}
        for ch in LABELS:
            if ch not in used:
                return ch
        i = len(used)
        while f"C{i}" in used:
            i += 1
        return f"C{i}"

    def park(self, snap: CartSnapshot) -> None:
        if snap.id == self.active_id:
            raise ValidationError(f"Cart {snap.id} is active; use new cart or switch instead.")
        self.parked.upsert(snap)

    def switch_to(
        self,
        target_id: str,
        current: CartSnapshot,
        apply_fn: Callable[[CartSnapshot], None],
    ) -> bool:
        """
        Estaciona `current` y reanuda `target_id` en una sola transacción.
        Si no hay snapshot para `target_id` no hace nada (no es error).
        """
        if target_id == self.active_id:
            return False
        with self.parked.begin() as db:
            target = self.parked.remove(target_id, db)
            if target is None:
                return False
            self.parked.upsert(current.model_copy(update={"id": self.active_id}), db)
            apply_fn(target)
        logger.info("switched cart %s -> %s", self.active_id, target_id)
        self.active_id = target_id
        return True

    def close(self, cart_id: str) -> bool:
        if cart_id == self.active_id:
            return False
        return self.parked.remove(cart_id) is not None

    def new_cart(
        self,
        current: CartSnapshot,
        reset_fn: Callable[[], None],
    ) -> str:
        with self.parked.begin() as db:
            self.parked.upsert(current.model_copy(update={"id": self.active_id}), db)
            next_id = self.next_label(db)
            reset_fn()
        logger.info("parked cart %s, new active cart %s", self.active_id, next_id)
        self.active_id = next_id
        return next_id

    def tabs(self) -> List[dict]:
        out = []
        for snap in self.parked.all():
            subtotal = sum((Decimal(l.qty) * l.unit_price_usd for l in snap.lines), Decimal("0"))
            out.append(
                {
                    "id": snap.id,
                    "label": snap.label,
                    "count": sum(l.qty for l in snap.lines),
                    "subtotal_usd": usd_ceil2(subtotal),
                    "created_at": snap.created_at,
                }
            )
        return out

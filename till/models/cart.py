from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, String, Text

from ..db import Base


class ParkedCart(Base):
    """Carrito estacionado: snapshot completo (JSON), nunca un diff."""

    __tablename__ = "parked_cart"
    id = Column(String(16), primary_key=True)  # una sola fila por id de carrito
    label = Column(String(80), nullable=False)
    created_at = Column(DateTime, default=lambda: datetime.now(timezone.utc))
    payload = Column(Text, nullable=False)

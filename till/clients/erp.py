"""
Cliente HTTP del ERP (productos por código de barras, tasas, lotes, ventas, cambio).

Todos los fallos de transporte, status != 2xx o cuerpos {"ok": false} se
traducen a NetworkError con el mensaje crudo. Sin reintentos automáticos.
"""

from __future__ import annotations

import logging
from typing import List, Optional

import requests

from till.core.config import Settings, settings as default_settings
from till.core.errors import LookupNotFound, NetworkError, RateUnavailable
from till.core.schemas import CashSession, Device, Lot, Product, Rate
from till.utils.money import n

logger = logging.getLogger(__name__)


def _rows(js) -> list:
    if isinstance(js, list):
        return js
    if isinstance(js, dict):
        data = js.get("data")
        if isinstance(data, list):
            return data
    return []


def _str(v) -> Optional[str]:
    return None if v is None else str(v)


def parse_product(js) -> Optional[Product]:
    """Acepta {id, sku}, {product: {...}}, {data: [...]} o {data: {...}}."""
    if not isinstance(js, dict):
        return None
    if js.get("id") and js.get("sku"):
        p = js
    elif isinstance(js.get("product"), dict) and js["product"].get("id"):
        p = js["product"]
    elif isinstance(js.get("data"), list):
        p = js["data"][0] if js["data"] else None
    elif isinstance(js.get("data"), dict) and js["data"].get("id"):
        p = js["data"]
    else:
        p = None
    if not p:
        return None
    price = p.get("price_usd")
    return Product(
        id=str(p["id"]),
        sku=str(p.get("sku") or ""),
        name=str(p.get("name") or ""),
        unit=_str(p.get("unit")),
        price_usd=None if price in (None, "") else n(price),
    )


class ErpClient:
    def __init__(self, base_url: str, token: str = "", timeout: float = 10.0, session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.http = session or requests.Session()
        self.http.headers.update({"Content-Type": "application/json"})
        if token:
            self.http.headers.update({"Authorization": f"Bearer {token}"})

    @classmethod
    def from_settings(cls, cfg: Settings = default_settings) -> "ErpClient":
        return cls(cfg.erp_base_url, cfg.erp_token, cfg.erp_timeout)

    def _request(self, method: str, path: str, *, idem: Optional[str] = None, allow_404: bool = False, **kw):
        headers = {"x-idempotency-key": idem} if idem else None
        try:
            r = self.http.request(method, f"{self.base_url}{path}", headers=headers, timeout=self.timeout, **kw)
        except requests.RequestException as exc:
            raise NetworkError(str(exc)) from exc

        if allow_404 and r.status_code == 404:
            return None
        try:
            js = r.json()
        except ValueError:
            js = None
        if not r.ok or (isinstance(js, dict) and js.get("ok") is False):
            msg = js.get("error") if isinstance(js, dict) else None
            raise NetworkError(str(msg or f"HTTP {r.status_code}"))
        return js

    # ---------- Productos ----------
    def get_product_by_barcode(self, barcode: str) -> Product:
        js = self._request("GET", "/api/products/byBar", params={"barcode": barcode}, allow_404=True)
        product = parse_product(js)
        if product is None:
            raise LookupNotFound(f"No product for barcode {barcode}")
        return product

    # ---------- Tasas ----------
    def get_latest_rate(self) -> Rate:
        js = self._request(
            "GET", "/api/exchange-rates", params={"limit": 1, "order": "as_of_date", "dir": "DESC"}
        )
        rows = _rows(js)
        row = rows[0] if rows else None
        # Sin fila o sin tasa contable positiva ⇒ "no hay tasa" (cerrado por defecto)
        if not row or n(row.get("rate_accounting")) <= 0:
            raise RateUnavailable()
        return Rate(
            accounting=n(row.get("rate_accounting")),
            sell=n(row.get("rate_sell_usd_to_sos")),
            buy=n(row.get("rate_buy_usd_with_sos")),
            as_of_date=_str(row.get("as_of_date")),
        )

    # ---------- Lotes ----------
    def get_lots(self, product_id: str) -> List[Lot]:
        js = self._request("GET", f"/api/batches/product/{product_id}")
        lots = js.get("lots") if isinstance(js, dict) else None
        return [
            Lot(
                batch_id=str(x["batch_id"]),
                batch_number=str(x.get("batch_number") or ""),
                expiry_date=_str(x.get("expiry_date")),
                store_id=str(x["store_id"]),
                store_name=str(x.get("store_name") or ""),
                product_id=_str(x.get("product_id")) or str(product_id),
                on_hand=int(n(x.get("on_hand"))),
            )
            for x in lots or []
        ]

    # ---------- Cuentas / dispositivos / sesiones ----------
    def get_cash_accounts(self) -> List[dict]:
        js = self._request("GET", "/api/accounts", params={"limit": 200})
        rows = _rows(js)
        return [a for a in rows if ((a or {}).get("AccountType") or {}).get("name") == "CASH_ON_HAND"]

    def get_devices(self) -> List[Device]:
        return [
            Device(id=str(x["id"]), label=_str(x.get("label")), name=_str(x.get("name")))
            for x in _rows(self._request("GET", "/api/devices"))
        ]

    def get_open_sessions(self) -> List[CashSession]:
        return [
            CashSession(
                id=str(x["id"]),
                device_id=_str(x.get("device_id")),
                opened_at=_str(x.get("opened_at")),
                closed_at=None,
            )
            for x in _rows(self._request("GET", "/api/cash-sessions"))
            if not x.get("closed_at")
        ]

    # ---------- Escrituras ----------
    def post_sale(self, body: dict, idempotency_key: Optional[str] = None) -> Optional[str]:
        js = self._request("POST", "/api/sales", json=body, idem=idempotency_key) or {}
        sale_id = (js.get("sale") or {}).get("id") or js.get("id")
        logger.info("sale posted id=%s key=%s", sale_id, idempotency_key)
        return _str(sale_id)

    def post_exchange(self, body: dict, idempotency_key: Optional[str] = None) -> dict:
        js = self._request("POST", "/api/exchange", json=body, idem=idempotency_key) or {}
        logger.info("exchange posted key=%s", idempotency_key)
        return js

from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from till.core.config import Settings
from till.core.errors import LookupNotFound, NetworkError, RateUnavailable
from till.core.schemas import CashSession, Device, Product, Rate
from till.db import Base, make_engine
from till.main import create_app
from till.models import cart as _cart_models  # noqa: F401

RATE = Rate(accounting=Decimal("26000"), sell=Decimal("27000"), buy=Decimal("28000"), as_of_date="2026-10-01")


class FakeClock:
    def __init__(self, t=1000.0):
        self.t = t

    def __call__(self):
        return self.t

    def advance(self, seconds):
        self.t += seconds


class FakeErp:
    """ERP en memoria: mismas firmas que ErpClient."""

    def __init__(self):
        self.rate = RATE
        self.products = {}
        self.lots = {}
        self.accounts = [
            {"name": "Cash_USD", "AccountType": {"name": "CASH_ON_HAND"}},
            {"name": "Cash_SOS", "AccountType": {"name": "CASH_ON_HAND"}},
        ]
        self.sales = []
        self.exchanges = []
        self.sale_keys = []
        self.exchange_keys = []
        self.fail_sale = 0
        self.fail_exchange = 0
        self.fail_accounts = 0

    def get_latest_rate(self):
        if self.rate is None or self.rate.accounting <= 0:
            raise RateUnavailable()
        return self.rate

    def get_product_by_barcode(self, code):
        try:
            return self.products[code]
        except KeyError:
            raise LookupNotFound(f"No product for barcode {code}")

    def get_lots(self, product_id):
        return self.lots.get(product_id, [])

    def get_cash_accounts(self):
        if self.fail_accounts:
            self.fail_accounts -= 1
            raise NetworkError("accounts endpoint down")
        return self.accounts

    def get_devices(self):
        return [Device(id="d1", name="Front")]

    def get_open_sessions(self):
        return [CashSession(id="s9", device_id="d2"), CashSession(id="s1", device_id="d1")]

    def post_sale(self, body, idempotency_key=None):
        self.sale_keys.append(idempotency_key)
        if self.fail_sale:
            self.fail_sale -= 1
            raise NetworkError("sales endpoint down")
        self.sales.append(body)
        return f"sale-{len(self.sales)}"

    def post_exchange(self, body, idempotency_key=None):
        self.exchange_keys.append(idempotency_key)
        if self.fail_exchange:
            self.fail_exchange -= 1
            raise NetworkError("exchange endpoint down")
        self.exchanges.append(body)
        return {"ok": True}


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def erp():
    return FakeErp()


@pytest.fixture
def cfg(tmp_path):
    return Settings(audit_file=str(tmp_path / "audit.jsonl"))


@pytest.fixture
def engine():
    eng = make_engine("sqlite://")
    Base.metadata.create_all(bind=eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def client(cfg, erp, engine):
    erp.products["6001"] = Product(id="p1", sku="6001", name="Milk", price_usd=Decimal("10.00"))
    app = create_app(cfg, client=erp, bind=engine)
    with TestClient(app) as c:
        yield c

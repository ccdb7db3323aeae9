from till.core.schemas import Rate

MILK = {"id": "p1", "sku": "6001", "name": "Milk", "price_usd": "10.00"}


def _ready(client):
    r = client.put("/till/selection", json={"customer": {"id": "c1", "name": "Amina"}})
    assert r.status_code == 200, r.text
    r = client.post("/till/lines", json={"product": MILK})
    assert r.status_code == 200 and r.json()["qty"] == 1


def test_bootstrap_picks_device_session_and_rate(client):
    v = client.get("/till").json()
    assert v["device"]["id"] == "d1"
    assert v["session"]["id"] == "s1"
    assert v["payment_entry_enabled"] is True


def test_checkout_flow_with_exchange_and_replay(client, erp):
    _ready(client)
    v = client.put("/till/tender", json={"usd_amount": "15"}).json()
    assert v["exchange"]["offered"] is True
    assert v["exchange"]["preview"]["raw_native"] == 135000

    r = client.post("/till/checkout")
    assert r.status_code == 422
    assert r.json()["detail"]["code"] == "VALIDATION_ERROR"

    assert client.post("/till/exchange/accept").status_code == 200

    h = {"x-idempotency-key": "tap-1"}
    r1 = client.post("/till/checkout", headers=h)
    assert r1.status_code == 200, r1.text
    assert r1.json()["sale_id"] == "sale-1"
    r2 = client.post("/till/checkout", headers=h)
    assert r2.status_code == 200
    assert r2.json()["replay"] is True and r2.headers["Idempotent-Replay"] == "true"
    assert len(erp.sales) == 1 and len(erp.exchanges) == 1

    assert client.get("/till").json()["lines"] == []


def test_tender_without_rate_is_503(client, erp):
    erp.rate = Rate()
    assert client.post("/till/rate/refresh").status_code == 503
    r = client.put("/till/tender", json={"usd_amount": "5"})
    assert r.status_code == 503
    assert r.json()["detail"]["code"] == "NO_EXCHANGE_RATE"


def test_line_edits(client):
    _ready(client)
    v = client.patch("/till/lines/p1", json={"qty": "3", "price": "2.001"}).json()
    assert v["lines"][0]["qty"] == 3
    assert v["summary"]["total_usd"] == "6.03"
    v = client.delete("/till/lines/p1").json()
    assert v["lines"] == []


def test_scan_route_dedups(client):
    first = client.post("/till/scan", json={"code": "6001"}).json()
    assert first["outcome"]["accepted"] is True and first["outcome"]["qty"] == 1
    second = client.post("/till/scan", json={"code": "6001"}).json()
    assert second["outcome"]["accepted"] is False
    assert client.get("/till").json()["lines"][0]["qty"] == 1


def test_cart_routes(client):
    _ready(client)
    r = client.post("/carts/new")
    assert r.json()["active_id"] == "B"
    assert [t["id"] for t in client.get("/carts").json()["parked"]] == ["A"]

    assert client.post("/carts/Z/switch").json()["switched"] is False
    assert client.delete("/carts/B").status_code == 409

    r = client.post("/carts/A/switch").json()
    assert r["switched"] is True and r["active_id"] == "A"
    assert len(client.get("/till").json()["lines"]) == 1
    assert client.delete("/carts/B").json()["closed"] is True


def test_audit_journal_route(client):
    _ready(client)
    client.put("/till/tender", json={"usd_amount": "10"})
    assert client.post("/till/checkout").status_code == 200
    items = client.get("/till/audit").json()["items"]
    assert [i["kind"] for i in items] == ["sale_posted"]
    assert items[0]["sale_id"] == "sale-1"

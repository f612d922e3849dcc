"""
HTTP API 测试
"""
from decimal import Decimal

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from cv_core.app import create_app

from .conftest import BUYER_ID, SHOP_A, SHOP_B

PREFIX = "/api/cv/v1"


@pytest_asyncio.fixture
async def client(db_manager, settings):
    app = create_app(db_manager=db_manager, settings=settings)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client


@pytest.fixture
def order_payload():
    return {
        "buyer_id": BUYER_ID,
        "buyer_name": "Tran Thi B",
        "shipping_address": {
            "recipient_name": "Tran Thi B",
            "phone_number": "0987654321",
            "full_address": "45 Le Loi, Hue",
        },
        "payment_method": "MOMO",
        "payment_status": "PAID",
        "shipping_fee": "30000",
        "items": [
            {"product_id": 1, "shop_id": SHOP_A, "quantity": 2, "price_at_purchase": "250000"},
            {"product_id": 2, "shop_id": SHOP_A, "quantity": 1, "price_at_purchase": "200000"},
            {"product_id": 3, "shop_id": SHOP_B, "quantity": 1, "price_at_purchase": "300000"},
        ],
    }


async def _transition(client, order_id, target, role="SELLER", **extra):
    return await client.post(
        f"{PREFIX}/orders/{order_id}/transitions",
        json={"target_status": target, "actor_role": role, **extra},
    )


async def test_health_check(client):
    response = await client.get("/healthz")

    assert response.status_code == 200
    assert response.json() == {"status": "healthy", "database": True}
    assert response.headers["X-Trace-Id"]


async def test_trace_id_is_echoed(client):
    response = await client.get("/healthz", headers={"X-Trace-Id": "trace-123"})

    assert response.headers["X-Trace-Id"] == "trace-123"


async def test_place_and_get_order(client, order_payload):
    response = await client.post(f"{PREFIX}/orders", json=order_payload)

    assert response.status_code == 201
    body = response.json()
    assert body["ok"] is True
    order = body["data"]
    assert order["status"] == "PENDING"
    assert Decimal(order["final_amount"]) == Decimal("1030000")
    assert order["full_address"] == "45 Le Loi, Hue"
    assert len(order["items"]) == 3

    response = await client.get(f"{PREFIX}/orders/{order['id']}")
    assert response.status_code == 200
    assert response.json()["data"]["id"] == order["id"]


async def test_order_lifecycle_with_settlements(client, order_payload):
    response = await client.put(
        f"{PREFIX}/commission/shops/{SHOP_A}",
        json={"rate": "4", "reason": "Artisan partner program"},
    )
    assert response.status_code == 200

    order_id = (await client.post(f"{PREFIX}/orders", json=order_payload)).json()["data"]["id"]
    for target in ("CONFIRMED", "SHIPPED", "DELIVERED"):
        response = await _transition(client, order_id, target)
        assert response.status_code == 200
    assert response.json()["data"]["version"] == 3

    settlements = (await client.get(f"{PREFIX}/orders/{order_id}/settlements")).json()["data"]
    assert [(s["shop_id"], s["status"]) for s in settlements] == [(SHOP_A, "PAYABLE"), (SHOP_B, "PAYABLE")]
    assert Decimal(settlements[0]["net_amount"]) == Decimal("693000")
    assert Decimal(settlements[1]["net_amount"]) == Decimal("294000")

    response = await _transition(client, order_id, "PAID", role="SYSTEM", transaction_id="BANK-1")
    assert response.json()["data"]["status"] == "PAID"

    settlement = (await client.get(f"{PREFIX}/orders/{order_id}/settlements/{SHOP_B}")).json()["data"]
    assert settlement["is_paid"] is True
    assert settlement["transaction_id"] == "BANK-1"

    events = (await client.get(f"{PREFIX}/orders/{order_id}/events")).json()["data"]
    assert [e["to_status"] for e in events] == ["PENDING", "CONFIRMED", "SHIPPED", "DELIVERED", "PAID"]


async def test_invalid_transition_error_envelope(client, order_payload):
    order_id = (await client.post(f"{PREFIX}/orders", json=order_payload)).json()["data"]["id"]

    response = await _transition(client, order_id, "DELIVERED")

    assert response.status_code == 409
    body = response.json()
    assert body["ok"] is False
    assert body["error"]["code"] == "ORDER_INVALID_TRANSITION"
    assert body["error"]["current_status"] == "PENDING"
    assert body["error"]["target_status"] == "DELIVERED"


async def test_unknown_order_returns_404(client):
    response = await client.get(f"{PREFIX}/orders/987654")

    assert response.status_code == 404
    assert response.json()["error"]["code"] == "ORDER_NOT_FOUND"


async def test_request_validation_error(client, order_payload):
    order_payload["items"] = []

    response = await client.post(f"{PREFIX}/orders", json=order_payload)

    assert response.status_code == 422
    error = response.json()["error"]
    assert error["code"] == "VALIDATION_ERROR"
    assert error["validation_errors"]


async def test_service_validation_error(client, order_payload):
    order_payload["subtotal"] = "1"

    response = await client.post(f"{PREFIX}/orders", json=order_payload)

    assert response.status_code == 422
    assert response.json()["error"]["code"] == "ORDER_SUBTOTAL_MISMATCH"


async def test_return_flow(client, order_payload):
    order_id = (await client.post(f"{PREFIX}/orders", json=order_payload)).json()["data"]["id"]
    for target in ("CONFIRMED", "SHIPPED", "DELIVERED"):
        await _transition(client, order_id, target)

    response = await client.post(f"{PREFIX}/returns", json={
        "order_id": order_id,
        "buyer_id": BUYER_ID,
        "reason_code": "NOT_AS_DESCRIBED",
        "reason_detail": "Colour differs from photos",
        "requested_resolution": "REFUND",
        "return_method": "DROP_OFF",
        "items": [{"product_id": 3, "quantity": 1}],
        "evidences": [{"url": "https://cdn.example.vn/rma/scarf.jpg"}],
    })
    assert response.status_code == 201
    rma = response.json()["data"]
    assert rma["shop_id"] == SHOP_B
    assert rma["evidences"] == [{"url": "https://cdn.example.vn/rma/scarf.jpg", "type": "IMAGE"}]

    response = await client.post(
        f"{PREFIX}/returns/{rma['rma_code']}/transitions",
        json={"target_status": "APPROVED", "actor_role": "BUYER"},
    )
    assert response.status_code == 403
    assert response.json()["error"]["code"] == "RETURN_ROLE_NOT_ALLOWED"

    for target, role in (("APPROVED", "SELLER"), ("SHIPPED", "BUYER"), ("RETURNED", "SELLER"), ("REFUNDED", "ADMIN")):
        response = await client.post(
            f"{PREFIX}/returns/{rma['rma_code']}/transitions",
            json={"target_status": target, "actor_role": role},
        )
        assert response.status_code == 200

    rma = (await client.get(f"{PREFIX}/returns/{rma['rma_code']}")).json()["data"]
    assert rma["status"] == "REFUNDED"
    assert rma["settlement_applied_at"] is not None
    assert [e["status"] for e in rma["events"]] == ["REQUESTED", "APPROVED", "SHIPPED", "RETURNED", "REFUNDED"]

    settlement = (await client.get(f"{PREFIX}/orders/{order_id}/settlements/{SHOP_B}")).json()["data"]
    assert Decimal(settlement["refunded_amount"]) == Decimal("300000")
    assert Decimal(settlement["net_amount"]) == Decimal("9000")

    returns = (await client.get(f"{PREFIX}/orders/{order_id}/returns")).json()["data"]
    assert [r["rma_code"] for r in returns] == [rma["rma_code"]]


async def test_quantity_exceeded(client, order_payload):
    order_id = (await client.post(f"{PREFIX}/orders", json=order_payload)).json()["data"]["id"]
    for target in ("CONFIRMED", "SHIPPED", "DELIVERED"):
        await _transition(client, order_id, target)

    response = await client.post(f"{PREFIX}/returns", json={
        "order_id": order_id,
        "buyer_id": BUYER_ID,
        "reason_code": "OTHER",
        "requested_resolution": "REFUND",
        "return_method": "PICKUP",
        "items": [{"product_id": 1, "quantity": 5}],
    })

    assert response.status_code == 422
    error = response.json()["error"]
    assert error["code"] == "RETURN_QUANTITY_EXCEEDED"
    assert error["available"] == 2


async def test_shop_return_listing(client, order_payload):
    order_id = (await client.post(f"{PREFIX}/orders", json=order_payload)).json()["data"]["id"]
    for target in ("CONFIRMED", "SHIPPED", "DELIVERED"):
        await _transition(client, order_id, target)

    for product_id in (1, 3):
        response = await client.post(f"{PREFIX}/returns", json={
            "order_id": order_id,
            "buyer_id": BUYER_ID,
            "reason_code": "DAMAGED_ITEM",
            "requested_resolution": "REFUND",
            "return_method": "PICKUP",
            "items": [{"product_id": product_id, "quantity": 1}],
        })
        assert response.status_code == 201

    response = await client.get(f"{PREFIX}/returns/shops/{SHOP_A}", params={"status": "REQUESTED", "limit": 10})
    assert response.status_code == 200
    body = response.json()
    assert [r["shop_id"] for r in body["data"]] == [SHOP_A]
    assert body["metadata"] == {"limit": 10, "offset": 0}

    response = await client.get(f"{PREFIX}/returns/shops/{SHOP_A}", params={"status": "LOST"})
    assert response.status_code == 422

    stats = (await client.get(f"{PREFIX}/returns/shops/{SHOP_B}/statistics")).json()["data"]
    assert stats["shop_id"] == SHOP_B
    assert stats["total"] == 1
    assert stats["counts"]["REQUESTED"] == 1
    assert stats["counts"]["REFUNDED"] == 0


async def test_commission_endpoints(client):
    response = await client.get(f"{PREFIX}/commission/resolve", params={"shop_id": SHOP_A})
    resolved = response.json()["data"]
    assert (resolved["source"], Decimal(resolved["rate"])) == ("DEFAULT", Decimal("5"))

    await client.put(f"{PREFIX}/commission/shops/{SHOP_A}", json={"rate": "4", "reason": "Partner"})
    response = await client.put(
        f"{PREFIX}/commission/global",
        json={"rate": "6", "reason": "Unify commission", "override_shop_configs": True},
    )
    assert response.status_code == 200
    assert response.json()["metadata"] == {"superseded_count": 1}

    history = (await client.get(f"{PREFIX}/commission/history", params={"shop_id": SHOP_A})).json()["data"]
    assert [Decimal(h["new_rate"]) for h in history] == [Decimal("6"), Decimal("4")]

    response = await client.put(f"{PREFIX}/commission/shops/{SHOP_A}", json={"rate": "120", "reason": "Typo"})
    assert response.status_code == 422

    response = await client.get(f"{PREFIX}/commission/history", params={"limit": 500})
    assert response.status_code == 422


async def test_shop_commission_listing(client):
    await client.put(f"{PREFIX}/commission/shops/{SHOP_B}", json={"rate": "3", "reason": "Partner"})
    await client.put(f"{PREFIX}/commission/shops/{SHOP_A}", json={"rate": "4", "reason": "Partner"})
    await client.put(f"{PREFIX}/commission/shops/{SHOP_A}", json={"rate": "4.5", "reason": "Quarterly review"})

    response = await client.get(f"{PREFIX}/commission/shops")
    assert response.status_code == 200
    body = response.json()
    assert [(c["shop_id"], Decimal(c["rate_value"])) for c in body["data"]] == [
        (SHOP_A, Decimal("4.5")), (SHOP_B, Decimal("3"))
    ]
    assert body["metadata"] == {"limit": 50, "offset": 0, "include_inactive": False}

    configs = (await client.get(f"{PREFIX}/commission/shops", params={"include_inactive": True})).json()["data"]
    assert len(configs) == 3
    assert configs[1]["effective_to"] is not None


async def test_performance_endpoints(client, order_payload):
    order_id = (await client.post(f"{PREFIX}/orders", json=order_payload)).json()["data"]["id"]
    for target in ("CONFIRMED", "SHIPPED", "DELIVERED"):
        await _transition(client, order_id, target)

    response = await client.post(f"{PREFIX}/performance/compute", json={
        "period_start": "2000-01-01T00:00:00Z",
        "period_end": "2100-01-01T00:00:00Z",
        "period_label": "all-time",
        "ratings": [{"shop_id": SHOP_B, "rating": "4.9", "rating_count": 12}],
    })
    assert response.status_code == 200
    body = response.json()
    assert body["metadata"] == {"count": 2}
    assert [s["rank"] for s in body["data"]] == [1, 2]

    snapshots = (await client.get(f"{PREFIX}/performance/snapshots", params={"period_label": "all-time"})).json()["data"]
    assert {s["shop_id"] for s in snapshots} == {SHOP_A, SHOP_B}

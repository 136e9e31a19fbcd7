import pytest
from fastapi.testclient import TestClient

from app import app, get_repositories
from db.memory import InMemoryRepositories
from errors import StorageError


@pytest.fixture
def api_repos():
    return InMemoryRepositories()


@pytest.fixture
def client(api_repos):
    """TestClient whose requests all share one in-memory store."""
    app.dependency_overrides[get_repositories] = lambda: api_repos
    yield TestClient(app)
    app.dependency_overrides.clear()


def _register_pair(client, api_repos, add_customer):
    add_customer(api_repos, "A")
    add_customer(api_repos, "B")

    res = client.post("/api/referral/generate", json={"user_id": "A"})
    assert res.status_code == 200
    code = res.json()["referral_code"]

    res = client.post(
        "/api/referral/register",
        json={"referred_user_id": "B", "referral_code": code},
    )
    assert res.status_code == 200
    return code, res.json()


def test_welcome_validate_endpoint(client, api_repos, add_customer):
    add_customer(api_repos, "u1")

    res = client.post("/api/offers/welcome/validate", json={"customer_id": "u1", "order_value": "250"})
    assert res.status_code == 200
    assert res.json() == {
        "eligible": True,
        "discount": "50.00",
        "usable_amount": "0.00",
        "reason": None,
        "code": None,
    }

    res = client.post("/api/offers/welcome/validate", json={"customer_id": "u1", "order_value": "150"})
    body = res.json()
    assert body["eligible"] is False
    assert body["reason"] == "Minimum order value of ₹199 required for welcome offer"
    assert body["code"] == "ineligible_offer"


def test_wallet_validate_endpoint_reports_exceeds_limit(client, api_repos, add_customer):
    add_customer(api_repos, "u1", wallet="100")

    res = client.post(
        "/api/offers/wallet/validate",
        json={"customer_id": "u1", "order_value": "500", "wallet_amount": "50"},
    )
    body = res.json()
    assert res.status_code == 200
    assert body["eligible"] is False
    assert body["code"] == "exceeds_limit"
    assert body["usable_amount"] == "30.00"


def test_promo_validate_endpoint(client, api_repos, add_customer, add_promo, now):
    add_customer(api_repos, "u1", first_order_placed_at=now, has_used_welcome_offer=True)
    add_promo(api_repos, "FEST20", discount_value="20")

    res = client.post(
        "/api/offers/promo/validate",
        json={"customer_id": "u1", "promo_code": "fest20", "order_value": "300"},
    )
    body = res.json()
    assert body["eligible"] is True
    assert body["discount"] == "60.00"

    res = client.post(
        "/api/offers/promo/validate",
        json={"customer_id": "u1", "promo_code": "fest20", "order_value": "300", "wallet_selected": True},
    )
    assert res.json()["code"] == "mutually_exclusive"


def test_checkout_preview(client, api_repos, add_customer):
    add_customer(api_repos, "u1")

    res = client.post(
        "/api/checkout/preview",
        json={"customer_id": "u1", "subtotal": "300", "apply_welcome": True},
    )
    assert res.status_code == 200
    body = res.json()
    assert body["valid"] is True
    assert body["breakdown"]["tax_amount"] == "17.00"
    assert body["breakdown"]["welcome_offer_discount"] == "50.00"
    assert body["breakdown"]["final_total"] == "307.00"
    # preview writes nothing
    assert api_repos.customers.get("u1").first_order_placed_at is None


def test_checkout_place_rejects_stacked_incentives(client, api_repos, add_customer):
    add_customer(api_repos, "u1", wallet="50")

    res = client.post(
        "/api/checkout/place",
        json={"customer_id": "u1", "subtotal": "300", "apply_welcome": True, "wallet_amount": "10"},
    )
    assert res.status_code == 400
    assert res.json()["code"] == "mutually_exclusive"


def test_checkout_place_and_cancel(client, api_repos, add_customer):
    add_customer(api_repos, "u1", wallet="30")

    res = client.post(
        "/api/checkout/place",
        json={"customer_id": "u1", "subtotal": "300", "wallet_amount": "30", "order_id": "o1"},
    )
    assert res.status_code == 200
    assert res.json()["wallet_amount_used"] == "30.00"
    assert res.json()["status"] == "PLACED"

    res = client.post("/api/orders/o1/cancel")
    assert res.status_code == 200
    assert res.json()["status"] == "CANCELLED"

    res = client.post("/api/orders/o1/cancel")
    assert res.status_code == 409
    assert res.json()["code"] == "invalid_state"

    res = client.get("/api/wallet", params={"user_id": "u1"})
    body = res.json()
    assert body["balance"] == "30.00"
    assert [t["type"] for t in body["transactions"]] == ["REFUND", "DEBIT", "CREDIT"]


def test_unknown_order_is_404(client):
    res = client.post("/api/orders/missing/cancel")
    assert res.status_code == 404
    assert res.json()["code"] == "not_found"


def test_referral_flow_through_webhook(client, api_repos, add_customer):
    code, referral = _register_pair(client, api_repos, add_customer)
    assert code.startswith("REF_")
    assert referral["status"] == "PENDING"
    assert referral["reward_amount"] == "20.00"

    res = client.post(
        "/api/checkout/place",
        json={"customer_id": "B", "subtotal": "300", "apply_welcome": True, "order_id": "o1"},
    )
    assert res.status_code == 200

    res = client.post("/api/webhook/order-delivered", json={"order_id": "o1"})
    assert res.status_code == 200
    body = res.json()
    assert body["order"]["status"] == "DELIVERED"
    assert body["reward"]["status"] == "credited"

    # redelivery of the webhook is harmless
    res = client.post("/api/webhook/order-delivered", json={"order_id": "o1"})
    assert res.json()["reward"]["status"] == "noop"

    res = client.get("/api/referral/summary", params={"user_id": "A"})
    summary = res.json()
    assert summary["referral_count"] == 1
    assert summary["total_earnings"] == "20.00"
    assert summary["by_status"]["CREDITED"] == 1

    res = client.get("/api/wallet", params={"user_id": "A"})
    assert res.json()["balance"] == "20.00"


def test_webhook_after_rejected_referral_stays_200(client, api_repos, add_customer, set_policy):
    set_policy(api_repos, max_referrals_per_user=0)
    _register_pair(client, api_repos, add_customer)

    client.post("/api/checkout/place",
                json={"customer_id": "B", "subtotal": "300", "apply_welcome": True, "order_id": "o1"})
    res = client.post("/api/webhook/order-delivered", json={"order_id": "o1"})
    assert res.json()["reward"]["status"] == "rejected"

    client.post("/api/checkout/place", json={"customer_id": "B", "subtotal": "300", "order_id": "o2"})
    for order_id in ("o2", "o1"):
        res = client.post("/api/webhook/order-delivered", json={"order_id": order_id})
        assert res.status_code == 200
        assert res.json()["reward"]["status"] == "noop"


def test_register_twice_is_400(client, api_repos, add_customer):
    code, _ = _register_pair(client, api_repos, add_customer)

    res = client.post("/api/referral/register", json={"referred_user_id": "B", "referral_code": code})
    assert res.status_code == 400
    assert "already has a referrer" in res.json()["detail"]


def test_register_unknown_code_is_404(client, api_repos, add_customer):
    add_customer(api_repos, "B")

    res = client.post("/api/referral/register", json={"referred_user_id": "B", "referral_code": "REF_NOPE"})
    assert res.status_code == 404


def test_expire_endpoint(client, api_repos, add_customer):
    _register_pair(client, api_repos, add_customer)

    res = client.post("/api/referral/expire")
    assert res.status_code == 200
    assert res.json() == {"expired": [], "count": 0}


def test_storage_error_is_503(client, api_repos, add_customer, monkeypatch):
    add_customer(api_repos, "u1")

    def boom(*args, **kwargs):
        raise StorageError("connection reset")

    monkeypatch.setattr(api_repos.customers, "get", boom)
    res = client.post("/api/offers/welcome/validate", json={"customer_id": "u1", "order_value": "250"})

    assert res.status_code == 503
    assert res.json()["code"] == "storage_error"


def test_negative_amounts_are_rejected_by_request_models(client):
    res = client.post("/api/offers/welcome/validate", json={"customer_id": "u1", "order_value": "-1"})
    assert res.status_code == 422

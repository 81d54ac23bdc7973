"""
Tests for the HTTP layer: authentication, routing and webhook handling.
"""
import json
from datetime import datetime, timedelta

import pytest
from fastapi.testclient import TestClient
from mongomock_motor import AsyncMongoMockClient

from app.api.deps import get_db
from app.api.routes import orders as order_routes
from app.api.routes import payments as payment_routes
from app.core.exceptions import InvalidInputError
from app.core.security import create_access_token
from app.main import app
from app.schemas.order import OrderCreate
from app.schemas.payment import CreatePaymentIntentRequest
from app.services.checkout_service import CheckoutService
from app.services.notification_service import RecordingPublisher
from app.services.payment_providers.simulation_service import SimulationService
from app.services.payment_providers.stripe_service import build_signature_header

WEBHOOK_SECRET = "whsec_api_secret"


@pytest.fixture
def api_publisher():
    return RecordingPublisher()


@pytest.fixture
def client(api_publisher):
    database = AsyncMongoMockClient()["storefront_api_test"]
    app.dependency_overrides[get_db] = lambda: database
    app.state.publisher = api_publisher
    app.state.payment_gateway = SimulationService(webhook_secret=WEBHOOK_SECRET)
    yield TestClient(app)
    app.dependency_overrides.clear()


def auth_headers(user_id="user-1", role="user"):
    return {"Authorization": f"Bearer {create_access_token(user_id, role)}"}


class TestHealth:
    """Test service endpoints."""
    
    def test_health(self, client):
        """Test the health check."""
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"


class TestAuthentication:
    """Test bearer token handling."""
    
    def test_missing_token(self, client):
        """Requests without a token are unauthorized."""
        response = client.get("/api/cart")
        assert response.status_code == 401
    
    def test_invalid_token(self, client):
        """Garbage tokens are unauthorized."""
        response = client.get("/api/cart", headers={"Authorization": "Bearer not-a-jwt"})
        assert response.status_code == 401
    
    def test_admin_only(self, client):
        """Admin routes reject regular users."""
        response = client.get("/api/orders/admin/all", headers=auth_headers())
        assert response.status_code == 403
    
    def test_admin_allowed(self, client):
        """Admins can list every order."""
        response = client.get("/api/orders/admin/all", headers=auth_headers("admin-1", "admin"))
        assert response.status_code == 200
        assert response.json()["orders"] == []


class TestCartEndpoints:
    """Test cart routes over HTTP."""
    
    def test_empty_cart(self, client):
        """A new user starts with an empty cart."""
        response = client.get("/api/cart", headers=auth_headers())
        assert response.status_code == 200
        body = response.json()
        assert body["items"] == []
        assert body["total_amount"] == 0
        
        count = client.get("/api/cart/count", headers=auth_headers())
        assert count.json() == {"count": 0}
    
    def test_add_unknown_product(self, client):
        """Adding a missing product is a 404."""
        response = client.post(
            "/api/cart/items",
            json={"product_id": "65a1f0c2e4b0a1b2c3d4e5f6", "quantity": 1},
            headers=auth_headers()
        )
        assert response.status_code == 404
    
    def test_quantity_bounds_validated(self, client):
        """Quantities outside 1..100 are rejected before any lookup."""
        response = client.post(
            "/api/cart/items",
            json={"product_id": "65a1f0c2e4b0a1b2c3d4e5f6", "quantity": 0},
            headers=auth_headers()
        )
        assert response.status_code == 422


class TestWebhookEndpoint:
    """Test the raw-body webhook route."""
    
    def test_bad_signature(self, client):
        """Unsigned or mis-signed deliveries get a 400."""
        payload = json.dumps({"type": "payment_intent.succeeded", "data": {"object": {"id": "pi_1"}}}).encode()
        
        response = client.post("/api/payments/webhook", content=payload)
        assert response.status_code == 400
        
        header = build_signature_header(payload, "whsec_wrong")
        response = client.post("/api/payments/webhook", content=payload, headers={"Stripe-Signature": header})
        assert response.status_code == 400
    
    def test_signed_delivery_acknowledged(self, client):
        """Correctly signed deliveries are acknowledged."""
        payload = json.dumps({"type": "charge.refunded", "data": {"object": {"id": "ch_1"}}}).encode()
        header = build_signature_header(payload, WEBHOOK_SECRET)
        
        response = client.post("/api/payments/webhook", content=payload, headers={"Stripe-Signature": header})
        
        assert response.status_code == 200
        assert response.json() == {"received": True, "event_type": "charge.refunded", "payment_intent_id": "ch_1"}


class TestPublicCoupons:
    """Test that coupon lookup and use need no login."""
    
    def _create_coupon(self, client, code="SAVE10"):
        response = client.post(
            "/api/coupons",
            json={
                "code": code,
                "discount_type": "percentage",
                "discount_value": 10,
                "expiry_date": (datetime.utcnow() + timedelta(days=30)).isoformat()
            },
            headers=auth_headers("admin-1", "admin")
        )
        assert response.status_code == 201
        return response.json()
    
    def test_validate_without_token(self, client):
        """Anyone can check a code."""
        self._create_coupon(client)
        
        response = client.post("/api/coupons/validate", json={"code": "save10", "order_amount": 100})
        
        assert response.status_code == 200
        body = response.json()
        assert body["is_valid"] is True
        assert body["discount_amount"] == 10.0
        assert body["coupon"]["code"] == "SAVE10"
    
    def test_validate_unknown_code_without_token(self, client):
        """Unknown codes are reported, not refused."""
        response = client.post("/api/coupons/validate", json={"code": "NOPE", "order_amount": 100})
        
        assert response.status_code == 200
        assert response.json()["message"] == "Invalid coupon code"
    
    def test_apply_without_token(self, client):
        """Anyone can record a coupon use."""
        coupon = self._create_coupon(client)
        
        response = client.post("/api/coupons/apply", json={"coupon_id": coupon["id"]})
        
        assert response.status_code == 200
        assert response.json()["used_count"] == 1
        
        missing = client.post("/api/coupons/apply", json={"coupon_id": "65a1f0c2e4b0a1b2c3d4e5f6"})
        assert missing.status_code == 404
    
    def test_management_still_admin_only(self, client):
        """Listing coupons still needs an admin."""
        assert client.get("/api/coupons").status_code == 401
        assert client.get("/api/coupons", headers=auth_headers()).status_code == 403


class TestPaymentCustomerEndpoints:
    """Test saved payment method routes."""
    
    def test_create_customer_and_list_cards(self, client):
        """A user gets one customer and sees only their own cards."""
        gateway = app.state.payment_gateway
        
        first = client.post("/api/payments/create-customer", json={"email": "ada@example.com"}, headers=auth_headers())
        again = client.post("/api/payments/create-customer", json={}, headers=auth_headers())
        
        assert first.status_code == 200
        assert first.json()["created"] is True
        assert again.json() == {"customer_id": first.json()["customer_id"], "created": False}
        
        gateway.simulate_card(first.json()["customer_id"], brand="visa", last4="4242")
        
        mine = client.get("/api/payments/payment-methods", headers=auth_headers())
        assert mine.status_code == 200
        assert [m["last4"] for m in mine.json()["payment_methods"]] == ["4242"]
        
        theirs = client.get("/api/payments/payment-methods", headers=auth_headers("user-2"))
        assert theirs.json() == {"payment_methods": []}
    
    def test_customer_routes_need_login(self, client):
        """Both routes require a token."""
        assert client.post("/api/payments/create-customer", json={}).status_code == 401
        assert client.get("/api/payments/payment-methods").status_code == 401
    
    def test_webhook_liveness(self, client):
        """The webhook test route answers without a signature."""
        response = client.get("/api/payments/test-webhook")
        
        assert response.status_code == 200
        assert response.json()["received"] is True


class TestCheckoutRoutes:
    """Test the checkout routes called directly with real services."""
    
    @pytest.mark.asyncio
    async def test_pay_then_create_order(self, checkout, gateway, user, address, make_product):
        """The full checkout through the route functions."""
        product_id = await make_product(price=50.0, stock=10)
        request = CreatePaymentIntentRequest(
            items=[{"product_id": product_id, "quantity": 2}],
            shipping_address=address,
            total_amount=118.0
        )
        
        intent = await payment_routes.create_payment_intent(request, user, checkout)
        assert intent["amount"] == 118.0
        
        gateway.simulate_success(intent["payment_intent_id"])
        order = await order_routes.create_order(
            OrderCreate(payment_intent_id=intent["payment_intent_id"]), user, checkout
        )
        
        assert order["id"]
        assert "_id" not in order
        assert order["total"] == 118.0
        assert order["payment_intent_id"] == intent["payment_intent_id"]
    
    @pytest.mark.asyncio
    async def test_simulation_requires_simulated_gateway(self, db, notifier, admin):
        """Simulation routes refuse to run against a real gateway."""
        service = CheckoutService(db, gateway=object(), notifier=notifier)
        with pytest.raises(InvalidInputError):
            await payment_routes.simulate_payment_success("pi_1", admin, service)

"""
Payment API routes for card payments through a payment intent gateway.

Handles intent creation, client-side confirmation, status checks, gateway
webhooks, saved payment methods, and admin payment simulation.
"""

from datetime import datetime
from typing import Optional
from fastapi import APIRouter, Depends, Header, Request, status

from app.api.deps import get_current_user, get_current_admin, get_checkout_service
from app.schemas.payment import (
    CreatePaymentIntentRequest,
    CreatePaymentIntentResponse,
    ConfirmPaymentRequest,
    ConfirmPaymentResponse,
    IntentStatusResponse,
    WebhookResponse,
    SimulatePaymentResponse,
    CreateCustomerRequest,
    CreateCustomerResponse,
    PaymentMethodsResponse,
    WebhookHealthResponse
)
from app.services.checkout_service import CheckoutService
from app.utils.helpers import format_document

router = APIRouter()


@router.post("/create-payment-intent", response_model=CreatePaymentIntentResponse, status_code=status.HTTP_201_CREATED)
async def create_payment_intent(
    request: CreatePaymentIntentRequest,
    current_user: dict = Depends(get_current_user),
    checkout_service: CheckoutService = Depends(get_checkout_service)
):
    """
    Start a checkout payment.
    
    **Validations:**
    - Every product exists and has enough stock
    - The coupon (if any) is valid for this order
    - ``total_amount`` (if sent) matches the server-side total to the cent
    
    **Returns:**
    - Client secret for the payment form
    - The price breakdown the shopper is charged
    
    Stock is not reserved here; it is taken when the payment succeeds.
    """
    return await checkout_service.create_payment_intent(
        current_user,
        items=[item.model_dump() for item in request.items],
        shipping_address=request.shipping_address.model_dump(),
        coupon_code=request.coupon_code,
        total_amount=request.total_amount
    )


@router.post("/confirm-payment", response_model=ConfirmPaymentResponse)
async def confirm_payment(
    request: ConfirmPaymentRequest,
    current_user: dict = Depends(get_current_user),
    checkout_service: CheckoutService = Depends(get_checkout_service)
):
    """
    Confirm a payment from the client and create its order.
    
    Safe to call more than once and safe to race with the webhook: a payment
    intent only ever produces one order.
    """
    order = await checkout_service.confirm_payment(
        current_user,
        request.payment_intent_id,
        items=[item.model_dump() for item in request.items] if request.items is not None else None,
        shipping_address=request.shipping_address.model_dump() if request.shipping_address else None
    )
    return {
        "message": "Payment confirmed and order created",
        "order": format_document(dict(order))
    }


@router.get("/intents/{payment_intent_id}", response_model=IntentStatusResponse)
async def get_payment_intent_status(
    payment_intent_id: str,
    current_user: dict = Depends(get_current_user),
    checkout_service: CheckoutService = Depends(get_checkout_service)
):
    """
    Get the checkout state of a payment intent.
    
    Users can only see their own intents.
    """
    return await checkout_service.get_intent_status(current_user, payment_intent_id)


@router.post("/webhook", response_model=WebhookResponse)
async def payment_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
    checkout_service: CheckoutService = Depends(get_checkout_service)
):
    """
    Gateway webhook endpoint.
    
    The signature is checked against the raw body before anything else;
    invalid signatures get a 400. Any correctly signed delivery is
    acknowledged, even when creating the order failed (the failure is kept on
    the intent and retried by the next trigger).
    """
    payload = await request.body()
    return await checkout_service.handle_webhook(payload, stripe_signature)


@router.get("/test-webhook", response_model=WebhookHealthResponse)
async def webhook_liveness():
    """Liveness check for the webhook route, used when wiring up the gateway dashboard."""
    return {
        "message": "Webhook endpoint is working!",
        "timestamp": datetime.utcnow().isoformat(),
        "received": True
    }


@router.post("/create-customer", response_model=CreateCustomerResponse)
async def create_customer(
    request: CreateCustomerRequest,
    current_user: dict = Depends(get_current_user),
    checkout_service: CheckoutService = Depends(get_checkout_service)
):
    """
    Create the gateway customer for the current user.
    
    Idempotent: a user who already has a customer gets the same id back.
    """
    return await checkout_service.create_customer(current_user, email=request.email, name=request.name)


@router.get("/payment-methods", response_model=PaymentMethodsResponse)
async def get_payment_methods(
    current_user: dict = Depends(get_current_user),
    checkout_service: CheckoutService = Depends(get_checkout_service)
):
    """
    List the current user's saved cards.
    
    Only the caller's own customer is ever queried.
    """
    methods = await checkout_service.list_payment_methods(current_user)
    return {"payment_methods": methods}


@router.post("/admin/{payment_intent_id}/simulate-success", response_model=SimulatePaymentResponse)
async def simulate_payment_success(
    payment_intent_id: str,
    admin: dict = Depends(get_current_admin),
    checkout_service: CheckoutService = Depends(get_checkout_service)
):
    """
    Simulate a successful payment (SIMULATION mode only, admin only).
    
    The simulated gateway marks the intent paid and delivers a signed
    ``payment_intent.succeeded`` webhook, which creates the order.
    """
    return await checkout_service.simulate_intent(payment_intent_id, success=True)


@router.post("/admin/{payment_intent_id}/simulate-failure", response_model=SimulatePaymentResponse)
async def simulate_payment_failure(
    payment_intent_id: str,
    admin: dict = Depends(get_current_admin),
    checkout_service: CheckoutService = Depends(get_checkout_service)
):
    """
    Simulate a failed payment (SIMULATION mode only, admin only).
    """
    return await checkout_service.simulate_intent(payment_intent_id, success=False)

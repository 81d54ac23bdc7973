"""
Checkout service - turns a paid payment intent into exactly one order.

Payment confirmation reaches us twice and in no particular order: once from
the shopper's browser (``confirm_payment``) and once from the gateway webhook
(``handle_webhook``). Both converge on ``materialize_order``, which is
idempotent per payment intent:

- an existing order for the intent is returned as-is;
- otherwise the intent record is claimed with an atomic status flip, so only
  one trigger at a time can decrement stock and apply the coupon;
- the unique ``orders.payment_intent_id`` index backs the claim up.

Stock is only touched at materialization, never when the intent is created.
"""

import json
import logging
from datetime import datetime, timedelta
from typing import Dict, Any, Optional, List, Tuple

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from app.config.payment_config import PAYMENT_CONFIG, PAYMENT_MODE, to_minor_units, from_minor_units
from app.core.exceptions import (
    ConflictError,
    ForbiddenError,
    InvalidInputError,
    InvalidQuantityError,
    NotFoundError,
)
from app.core.config import settings
from app.models.order import (
    Order,
    OrderItem,
    OrderStatus,
    PaymentStatus,
    ProductSnapshot,
    ShippingAddress,
    StatusHistory,
)
from app.models.payment import IntentStatus, GATEWAY_STATUS_MAP, PaymentIntentRecord
from app.models.product import primary_image
from app.services.cart_service import CartService
from app.services.coupon_service import CouponService, coupon_snapshot
from app.services.notification_service import NotificationService
from app.services.payment_providers.simulation_service import SimulationService
from app.services.payment_providers.stripe_service import StripeService
from app.services.stock_ledger import StockLedger
from app.utils.helpers import round_money
from app.utils.pricing import calculate_order_totals

logger = logging.getLogger(__name__)

# A trigger holding one of these has either finished or is still working
CLAIMED_STATUSES = [IntentStatus.MATERIALIZING.value, IntentStatus.ORDER_CREATED.value]


def build_gateway():
    """Pick the payment gateway for the running mode."""
    if PAYMENT_MODE == "SIMULATION":
        return SimulationService()
    return StripeService()


def _put_chunked(metadata: Dict[str, str], key: str, text: str):
    """Store ``text`` under ``key``, ``key_1``, ``key_2``... within the per-value limit."""
    size = PAYMENT_CONFIG["metadata_max_value_length"]
    chunks = [text[i:i + size] for i in range(0, len(text), size)] or [""]
    metadata[key] = chunks[0]
    for index, chunk in enumerate(chunks[1:], start=1):
        metadata[f"{key}_{index}"] = chunk


def _get_chunked(metadata: Dict[str, Any], key: str) -> Any:
    value = metadata[key]
    if not isinstance(value, str):
        return value
    parts = [value]
    index = 1
    while f"{key}_{index}" in metadata:
        parts.append(metadata[f"{key}_{index}"])
        index += 1
    return json.loads("".join(parts))


def encode_metadata(
    user_id: str,
    lines: List[Dict[str, Any]],
    shipping_address: Dict[str, Any],
    coupon_code: Optional[str],
    totals: Dict[str, float]
) -> Dict[str, str]:
    """
    Flatten checkout data into the gateway's string-only metadata map.

    Everything needed to rebuild the order from the webhook alone goes here.
    Items are packed as ``[product_id, quantity, price]`` triples and, like
    the address, split across numbered keys when longer than one value allows.

    Raises:
        InvalidInputError: the order does not fit in the gateway's metadata
    """
    metadata = {"user_id": user_id, "coupon_code": coupon_code or ""}
    packed = [[line["product_id"], line["quantity"], line["price"]] for line in lines]
    _put_chunked(metadata, "items", json.dumps(packed, separators=(",", ":")))
    _put_chunked(metadata, "shipping_address", json.dumps(shipping_address, separators=(",", ":")))
    for key in ("subtotal", "discount", "shipping", "tax", "total"):
        metadata[key] = f"{totals[key]:.2f}"

    if len(metadata) > PAYMENT_CONFIG["metadata_max_keys"]:
        raise InvalidInputError("Too many different products for a single payment")
    return metadata


def _unpack_line(line: Any) -> Dict[str, Any]:
    if isinstance(line, dict):
        return {"product_id": line["product_id"], "quantity": line["quantity"], "price": line["price"]}
    product_id, quantity, price = line
    return {"product_id": product_id, "quantity": quantity, "price": price}


def decode_metadata(metadata: Dict[str, Any]) -> Dict[str, Any]:
    """Inverse of ``encode_metadata``; raises InvalidInputError on anything unusable."""
    try:
        decoded = {
            "user_id": metadata["user_id"],
            "items": [_unpack_line(line) for line in _get_chunked(metadata, "items")],
            "shipping_address": _get_chunked(metadata, "shipping_address"),
            "coupon_code": metadata.get("coupon_code") or None,
        }
        for key in ("subtotal", "discount", "shipping", "tax", "total"):
            decoded[key] = float(metadata[key])
    except (KeyError, TypeError, ValueError):
        raise InvalidInputError("Payment intent is missing checkout metadata")

    if not decoded["user_id"] or not decoded["items"]:
        raise InvalidInputError("Payment intent is missing checkout metadata")
    return decoded


def merge_lines(items: List[Dict[str, Any]]) -> Dict[str, int]:
    """Collapse requested items into ``{product_id: quantity}``."""
    quantities: Dict[str, int] = {}
    for item in items:
        product_id = str(item["product_id"])
        quantity = item["quantity"]
        if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity < 1:
            raise InvalidQuantityError("Quantity must be at least 1")
        quantities[product_id] = quantities.get(product_id, 0) + quantity
    for quantity in quantities.values():
        if quantity > settings.MAX_CART_ITEM_QUANTITY:
            raise InvalidQuantityError(
                f"Quantity must be between 1 and {settings.MAX_CART_ITEM_QUANTITY}"
            )
    return quantities


class CheckoutService:
    """Payment intent orchestration and order materialization."""

    def __init__(self, db: AsyncIOMotorDatabase, gateway, notifier: NotificationService = None):
        self.db = db
        self.gateway = gateway
        self.notifier = notifier or NotificationService()
        self.stock = StockLedger(db, self.notifier)
        self.coupons = CouponService(db, self.notifier)
        self.carts = CartService(db, self.notifier)

    async def price_order(
        self,
        items: List[Dict[str, Any]],
        coupon_code: Optional[str] = None
    ) -> Tuple[List[Dict[str, Any]], Dict[str, float], Optional[dict]]:
        """
        Price requested items from live catalog data.

        Returns:
            (lines with unit prices, totals, coupon document or None)
        """
        if not items:
            raise InvalidInputError("No items to check out")

        quantities = merge_lines(items)
        await self.stock.check_available(quantities.items())

        lines = []
        categories = set()
        subtotal = 0.0
        for product_id, quantity in quantities.items():
            product = await self.stock.get_product(product_id)
            lines.append({"product_id": product_id, "quantity": quantity, "price": product["price"]})
            categories.add(product.get("category"))
            subtotal += product["price"] * quantity

        subtotal = round_money(subtotal)
        coupon = None
        discount = 0.0
        if coupon_code:
            result = await self.coupons.validate(coupon_code, subtotal, categories)
            if not result["is_valid"]:
                raise InvalidInputError(result["message"])
            coupon = result["coupon"]
            discount = result["discount_amount"]

        return lines, calculate_order_totals(subtotal, discount), coupon

    async def create_payment_intent(
        self,
        user: dict,
        items: List[Dict[str, Any]],
        shipping_address: Dict[str, Any],
        coupon_code: Optional[str] = None,
        total_amount: Optional[float] = None
    ) -> Dict[str, Any]:
        """
        Price the order and open a gateway payment intent for it.

        Args:
            user: Authenticated principal
            items: ``[{product_id, quantity}]``
            shipping_address: Address dict
            coupon_code: Optional coupon code
            total_amount: Client-computed total; must agree with ours to the cent

        Returns:
            Client secret, intent id and the price breakdown
        """
        user_id = str(user["_id"])
        lines, totals, coupon = await self.price_order(items, coupon_code)

        if total_amount is not None and to_minor_units(total_amount) != to_minor_units(totals["total"]):
            raise InvalidInputError(
                f"Order total mismatch: expected {totals['total']:.2f}, got {float(total_amount):.2f}"
            )
        if totals["total"] <= 0:
            raise InvalidInputError("Order total must be greater than zero")

        address = ShippingAddress(**shipping_address).model_dump()
        code = coupon["code"] if coupon else None
        metadata = encode_metadata(user_id, lines, address, code, totals)
        currency = PAYMENT_CONFIG["currency"]

        intent = await self.gateway.create_intent(to_minor_units(totals["total"]), currency, metadata)

        record = PaymentIntentRecord(
            _id=intent["intent_id"],
            user_id=user_id,
            amount=totals["total"],
            currency=currency,
            status=GATEWAY_STATUS_MAP.get(intent["status"], IntentStatus.CREATED),
            metadata=decode_metadata(metadata)
        )
        try:
            await self.db.payment_intents.insert_one(record.model_dump(by_alias=True))
        except DuplicateKeyError:
            # A webhook for this intent got here first
            logger.info(f"Payment intent {intent['intent_id']} already recorded")

        logger.info(f"Payment intent {intent['intent_id']} created for user {user_id}, total {totals['total']}")

        return {
            "client_secret": intent["client_secret"],
            "payment_intent_id": intent["intent_id"],
            "amount": totals["total"],
            "currency": currency,
            "subtotal": totals["subtotal"],
            "shipping": totals["shipping"],
            "tax": totals["tax"],
            "discount": totals["discount"],
        }

    async def get_intent_status(self, user: dict, intent_id: str) -> Dict[str, Any]:
        """Recorded checkout state of an intent plus the gateway's current status."""
        record = await self.db.payment_intents.find_one({"_id": intent_id})
        if not record or (record["user_id"] != str(user["_id"]) and user.get("role") != "admin"):
            raise NotFoundError("Payment intent not found")

        gateway_intent = await self.gateway.retrieve_intent(intent_id)
        return {
            "payment_intent_id": intent_id,
            "status": record["status"],
            "gateway_status": gateway_intent["status"],
            "amount": record["amount"],
            "currency": record["currency"],
            "order_id": record.get("order_id"),
            "last_error": record.get("last_error"),
        }

    async def create_customer(
        self,
        user: dict,
        email: Optional[str] = None,
        name: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Get or create the gateway customer for a user.

        One customer per user; repeat calls return the stored one.

        Returns:
            ``{customer_id, created}``
        """
        user_id = str(user["_id"])
        existing = await self.db.payment_customers.find_one({"_id": user_id})
        if existing:
            return {"customer_id": existing["customer_id"], "created": False}

        customer = await self.gateway.create_customer(user_id, email=email, name=name)
        try:
            await self.db.payment_customers.insert_one({
                "_id": user_id,
                "customer_id": customer["customer_id"],
                "gateway": self.gateway.name,
                "created_at": datetime.utcnow(),
            })
        except DuplicateKeyError:
            existing = await self.db.payment_customers.find_one({"_id": user_id})
            logger.warning(f"Concurrent customer creation for {user_id}; keeping {existing['customer_id']}")
            return {"customer_id": existing["customer_id"], "created": False}

        logger.info(f"Payment customer {customer['customer_id']} linked to user {user_id}")
        return {"customer_id": customer["customer_id"], "created": True}

    async def list_payment_methods(self, user: dict) -> List[Dict[str, Any]]:
        """Saved payment methods of the calling user; empty if they never became a customer."""
        record = await self.db.payment_customers.find_one({"_id": str(user["_id"])})
        if not record:
            return []
        return await self.gateway.list_payment_methods(record["customer_id"])

    async def _load_metadata(self, gateway_intent: Dict[str, Any]) -> Dict[str, Any]:
        record = await self.db.payment_intents.find_one({"_id": gateway_intent["id"]})
        if record and record.get("metadata"):
            return record["metadata"]
        return decode_metadata(gateway_intent.get("metadata") or {})

    async def confirm_payment(
        self,
        user: dict,
        intent_id: str,
        items: Optional[List[Dict[str, Any]]] = None,
        shipping_address: Optional[Dict[str, Any]] = None
    ) -> dict:
        """
        Client-side confirmation: create the order for a succeeded intent.

        Returns:
            The order (new, or the one already created for this intent)
        """
        gateway_intent = await self.gateway.retrieve_intent(intent_id)
        metadata = await self._load_metadata(gateway_intent)

        if metadata["user_id"] != str(user["_id"]):
            raise ForbiddenError("Payment intent does not belong to this user")

        if gateway_intent["status"] != "succeeded":
            await self._record_status(intent_id, GATEWAY_STATUS_MAP.get(gateway_intent["status"], IntentStatus.CREATED))
            raise InvalidInputError(f"Payment not completed. Status: {gateway_intent['status']}")

        if items is not None:
            paid = {line["product_id"]: line["quantity"] for line in metadata["items"]}
            if merge_lines(items) != paid:
                raise InvalidInputError("Order items do not match the payment")

        if shipping_address is not None:
            if ShippingAddress(**shipping_address).model_dump() != ShippingAddress(**metadata["shipping_address"]).model_dump():
                raise InvalidInputError("Shipping address does not match the payment")

        return await self.materialize_order(gateway_intent, metadata)

    async def handle_webhook(self, payload: bytes, signature_header: Optional[str]) -> Dict[str, Any]:
        """
        Gateway webhook: verify, then dispatch on event type.

        Signature failures raise before anything is read. After that the
        delivery is always acknowledged; processing errors are logged and
        kept on the intent record for the next trigger to retry.
        """
        event = self.gateway.construct_event(payload, signature_header)
        event_type = event["type"]
        data = event.get("data")
        intent = data.get("object") if isinstance(data, dict) else None
        if not isinstance(intent, dict):
            intent = {}
        intent_id = intent.get("id") if isinstance(intent.get("id"), str) else None
        logger.info(f"Webhook received: {event_type} for {intent_id}")

        try:
            await self._dispatch_event(event_type, intent)
        except Exception as e:
            logger.exception(f"Webhook {event_type} for {intent_id} could not be processed: {e}")

        return {"received": True, "event_type": event_type, "payment_intent_id": intent_id}

    async def _dispatch_event(self, event_type: str, intent: Dict[str, Any]):
        intent_id = intent.get("id")
        if not isinstance(intent_id, str) or not intent_id or not event_type.startswith("payment_intent."):
            logger.info(f"Ignoring webhook event {event_type}")
            return

        if event_type == "payment_intent.succeeded":
            try:
                order = await self.materialize_order(intent)
                logger.info(f"Webhook materialized order {order['_id']} for {intent_id}")
            except ConflictError:
                logger.info(f"Order for {intent_id} is being created by another trigger")
            except Exception as e:
                logger.exception(f"Webhook could not create order for {intent_id}: {e}")
                await self._record_status(intent_id, IntentStatus.SUCCEEDED, last_error=getattr(e, "detail", str(e)))

        elif event_type == "payment_intent.payment_failed":
            error = (intent.get("last_payment_error") or {}).get("message", "Payment failed")
            await self._record_status(intent_id, IntentStatus.FAILED, last_error=error)

        elif event_type == "payment_intent.canceled":
            await self._record_status(intent_id, IntentStatus.CANCELED)

        elif event_type == "payment_intent.requires_action":
            await self._record_status(intent_id, IntentStatus.REQUIRES_ACTION)

        elif event_type == "payment_intent.created":
            await self._ensure_record(intent)

        else:
            logger.info(f"Ignoring webhook event {event_type}")

    async def _ensure_record(self, gateway_intent: Dict[str, Any], metadata: Optional[Dict[str, Any]] = None):
        """Create the intent record from gateway data if we never saw the creation."""
        if metadata is None:
            try:
                metadata = decode_metadata(gateway_intent.get("metadata") or {})
            except InvalidInputError:
                logger.warning(f"Payment intent {gateway_intent['id']} carries no checkout metadata")
                return
        now = datetime.utcnow()
        try:
            await self.db.payment_intents.update_one(
                {"_id": gateway_intent["id"]},
                {"$setOnInsert": {
                    "user_id": metadata["user_id"],
                    "amount": from_minor_units(gateway_intent["amount"]),
                    "currency": gateway_intent.get("currency", PAYMENT_CONFIG["currency"]),
                    "status": IntentStatus.CREATED.value,
                    "metadata": metadata,
                    "order_id": None,
                    "last_error": None,
                    "claimed_at": None,
                    "created_at": now,
                    "updated_at": now,
                }},
                upsert=True
            )
        except DuplicateKeyError:
            pass

    async def _record_status(self, intent_id: str, status: IntentStatus, last_error: Optional[str] = None):
        """Store a gateway-reported state unless an order is already claimed or created."""
        update = {"status": status.value, "updated_at": datetime.utcnow()}
        if last_error is not None:
            update["last_error"] = last_error
        await self.db.payment_intents.update_one(
            {"_id": intent_id, "status": {"$nin": CLAIMED_STATUSES}},
            {"$set": update}
        )

    async def _claim(self, intent_id: str) -> Optional[dict]:
        now = datetime.utcnow()
        stale_before = now - timedelta(seconds=PAYMENT_CONFIG["claim_timeout_seconds"])
        return await self.db.payment_intents.find_one_and_update(
            {
                "_id": intent_id,
                "$or": [
                    {"status": {"$nin": CLAIMED_STATUSES}},
                    {"status": IntentStatus.MATERIALIZING.value, "claimed_at": {"$lt": stale_before}},
                ],
            },
            {"$set": {
                "status": IntentStatus.MATERIALIZING.value,
                "claimed_at": now,
                "updated_at": now,
            }},
            return_document=ReturnDocument.AFTER
        )

    async def _release_claim(self, intent_id: str, claimed_at: datetime, error: str):
        """Hand a failed claim back, unless a later trigger has already re-taken it."""
        await self.db.payment_intents.update_one(
            {"_id": intent_id, "status": IntentStatus.MATERIALIZING.value, "claimed_at": claimed_at},
            {"$set": {
                "status": IntentStatus.SUCCEEDED.value,
                "last_error": error,
                "claimed_at": None,
                "updated_at": datetime.utcnow(),
            }}
        )

    async def materialize_order(
        self,
        gateway_intent: Dict[str, Any],
        metadata: Optional[Dict[str, Any]] = None
    ) -> dict:
        """
        Create the order for a succeeded payment intent, at most once.

        Args:
            gateway_intent: Intent as returned by the gateway (id, status, amount, metadata)
            metadata: Decoded checkout metadata, when the caller already has it

        Returns:
            The order document

        Raises:
            ConflictError: another trigger is creating this order right now
        """
        intent_id = gateway_intent["id"]
        if gateway_intent.get("status") != "succeeded":
            raise InvalidInputError(f"Payment not completed. Status: {gateway_intent.get('status')}")

        existing = await self.db.orders.find_one({"payment_intent_id": intent_id})
        if existing:
            logger.info(f"Order {existing['_id']} already exists for payment intent {intent_id}")
            return existing

        if metadata is None:
            metadata = await self._load_metadata(gateway_intent)
        if to_minor_units(metadata["total"]) != gateway_intent.get("amount"):
            raise InvalidInputError("Payment amount does not match the order total")

        await self._ensure_record(gateway_intent, metadata)
        claim = await self._claim(intent_id)
        if claim is None:
            existing = await self.db.orders.find_one({"payment_intent_id": intent_id})
            if existing:
                return existing
            raise ConflictError("Order creation for this payment is already in progress")

        try:
            order, created = await self._create_order(intent_id, metadata)
        except Exception as e:
            await self._release_claim(intent_id, claim["claimed_at"], getattr(e, "detail", str(e)))
            raise

        await self.db.payment_intents.update_one(
            {"_id": intent_id},
            {"$set": {
                "status": IntentStatus.ORDER_CREATED.value,
                "order_id": str(order["_id"]),
                "last_error": None,
                "updated_at": datetime.utcnow(),
            }}
        )
        if not created:
            return order

        user_id = order["user_id"]
        try:
            await self.carts.delete_cart(user_id)
        except Exception as e:
            logger.error(f"Order {order['_id']} created but cart for {user_id} was not deleted: {e}")

        await self.notifier.notify_user(user_id, "newOrder", {"order": order})
        await self.notifier.notify_user(user_id, "cart:cleared", {"user_id": user_id})
        await self.notifier.notify_admins("newOrder", {"order": order})
        await self.notifier.analytics_updated("order_created", {
            "order_id": str(order["_id"]),
            "total": order["total"],
        })

        logger.info(f"Order {order['_id']} created for payment intent {intent_id}")
        return order

    async def _snapshot_items(self, lines: List[Dict[str, Any]]) -> List[dict]:
        items = []
        for line in lines:
            product = await self.stock.get_product(line["product_id"])
            snapshot = ProductSnapshot(
                _id=str(product["_id"]),
                name=product.get("name", ""),
                price=product["price"],
                image_url=primary_image(product),
                images=[image for image in product.get("images") or [] if isinstance(image, dict)],
                category=product.get("category") or ""
            )
            items.append(OrderItem(product=snapshot, quantity=line["quantity"], price=line["price"]))
        return items

    async def _create_order(self, intent_id: str, metadata: Dict[str, Any]) -> Tuple[dict, bool]:
        """
        Decrement stock, use the coupon and insert the order as one unit.

        Returns:
            (order, created) where created is False if a concurrent insert won
        """
        items = await self._snapshot_items(metadata["items"])
        stock_lines = [(line["product_id"], line["quantity"]) for line in metadata["items"]]

        applied = await self.stock.decrement_all(stock_lines)

        coupon = None
        if metadata.get("coupon_code"):
            try:
                coupon = await self.db.coupons.find_one({"code": metadata["coupon_code"]})
                if not coupon:
                    raise InvalidInputError("Coupon no longer exists")
                coupon = await self.coupons.apply(str(coupon["_id"]))
            except Exception:
                await self.stock.increment_all(applied)
                raise

        now = datetime.utcnow()
        order = Order(
            user_id=metadata["user_id"],
            items=items,
            shipping_address=ShippingAddress(**metadata["shipping_address"]),
            payment_status=PaymentStatus.COMPLETED,
            order_status=OrderStatus.PENDING,
            subtotal=metadata["subtotal"],
            shipping=metadata["shipping"],
            tax=metadata["tax"],
            discount=metadata["discount"],
            coupon=coupon_snapshot(coupon, metadata["discount"]) if coupon else None,
            total=metadata["total"],
            payment_intent_id=intent_id,
            status_history=[StatusHistory(
                status=OrderStatus.PENDING.value,
                changed_at=now,
                changed_by="system",
                note=f"Order created from payment {intent_id}"
            )],
            created_at=now,
            updated_at=now
        )
        order_dict = order.model_dump(by_alias=True, exclude={"id"})

        try:
            result = await self.db.orders.insert_one(order_dict)
        except Exception as e:
            await self.stock.increment_all(applied)
            if coupon:
                await self.coupons.release(str(coupon["_id"]))
            if isinstance(e, DuplicateKeyError):
                existing = await self.db.orders.find_one({"payment_intent_id": intent_id})
                if existing:
                    return existing, False
            raise

        order_dict["_id"] = result.inserted_id
        return order_dict, True

    async def simulate_intent(self, intent_id: str, success: bool = True) -> Dict[str, Any]:
        """
        Drive a simulated intent to success or failure (SIMULATION mode only).

        The resulting webhook is delivered through ``handle_webhook`` so the
        whole confirmation path runs as it would against the real gateway.
        """
        if not isinstance(self.gateway, SimulationService):
            raise InvalidInputError("Payment simulation is only available in SIMULATION mode")

        if success:
            self.gateway.simulate_success(intent_id)
        else:
            self.gateway.simulate_failure(intent_id)

        payload, signature = self.gateway.build_webhook(intent_id)
        await self.handle_webhook(payload, signature)

        record = await self.db.payment_intents.find_one({"_id": intent_id}) or {}
        return {
            "message": "Payment simulated successfully" if success else "Payment failure simulated",
            "payment_intent_id": intent_id,
            "status": record.get("status"),
            "order_id": record.get("order_id"),
        }

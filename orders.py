import asyncio
import logging
import uuid
from typing import List, Optional, Sequence

import stripe
from pydantic import BaseModel

import pricing
from config import ORDERS, PRIMARY_CURRENCY, STRIPE_SECRET
from errors import NotFoundError, SyncError, ValidationError
from schemas import Address, CurrentUser, LineItem, Order, OrderItem, ShippingDetails, utcnow
from session import Session
from sync import DocumentStore

logger = logging.getLogger("ramro.orders")

if STRIPE_SECRET:
    stripe.api_key = STRIPE_SECRET

PAYMENT_PROVIDERS = ("dummy", "stripe")
ORDER_STATUSES = ("processing", "paid", "shipped", "delivered", "cancelled", "refunded")
PAYMENT_STATUSES = ("pending", "paid", "refunded", "failed")


class CheckoutResult(BaseModel):
    order: Order
    client_secret: Optional[str] = None


def new_order_number() -> str:
    return f"ORD-{utcnow():%Y%m%d}-{uuid.uuid4().hex[:6].upper()}"


def build_order(user: CurrentUser, items: Sequence[LineItem], address: Address,
                payment_provider: str = "dummy", notes: Optional[str] = None) -> Order:
    totals = pricing.compute_totals(items)
    return Order(
        id=uuid.uuid4().hex,
        order_number=new_order_number(),
        user_id=user.id,
        email=user.email,
        items=[OrderItem(product_id=i.product_id, name=i.name, quantity=i.quantity,
                         unit_price=i.unit_price, image_ref=i.image_ref, category=i.category) for i in items],
        subtotal=totals.subtotal,
        tax=totals.tax,
        shipping=totals.shipping,
        total=totals.grand_total,
        currency=PRIMARY_CURRENCY,
        shipping_details=ShippingDetails(
            name=address.recipient_name,
            phone=address.recipient_phone,
            address=address.full_address,
            label=address.display_label,
        ),
        payment_provider=payment_provider,
        notes=notes,
    )


async def save_order(documents: DocumentStore, order: Order):
    try:
        await documents.set_document(ORDERS, order.id, order.model_dump(mode="json"))
    except Exception as exc:
        raise SyncError(f"Failed to save order: {exc}", ORDERS, order.id) from exc


async def place_order(session: Session, documents: DocumentStore, address_id: Optional[str] = None,
                      payment_provider: str = "dummy", notes: Optional[str] = None) -> CheckoutResult:
    user = session.require_user()
    items = session.cart.items
    if not items:
        raise ValidationError("Your cart is empty")
    if payment_provider not in PAYMENT_PROVIDERS:
        raise ValidationError(f"Unsupported payment provider: {payment_provider}")
    if address_id:
        address = session.addresses.get_address(address_id)
        if address is None:
            raise NotFoundError("Address not found")
    else:
        address = session.addresses.get_default_address()
        if address is None:
            raise ValidationError("Please select a delivery address")

    order = build_order(user, items, address, payment_provider, notes)
    client_secret = None
    if payment_provider == "stripe":
        if not STRIPE_SECRET:
            raise ValidationError("Stripe not configured")
        intent = await asyncio.to_thread(
            stripe.PaymentIntent.create,
            amount=pricing.to_minor_units(order.total),
            currency=order.currency.lower(),
            metadata={"order_id": order.id},
        )
        order.payment_ref = intent.id
        client_secret = intent.client_secret
    else:
        # dummy payments settle immediately
        order.status = "paid"
        order.payment_status = "paid"

    await save_order(documents, order)
    logger.info("Order %s placed by %s for %s %s", order.order_number, user.id, order.total, order.currency)
    session.cart.clear()
    return CheckoutResult(order=order, client_secret=client_secret)


async def list_orders(documents: DocumentStore, user: CurrentUser, limit: int = 100) -> List[Order]:
    if user.role == "customer":
        docs = await documents.find_documents(ORDERS, user_id=user.id)
    else:
        docs = await documents.find_documents(ORDERS)
    orders = [Order.model_validate(d) for d in docs]
    orders.sort(key=lambda o: o.created_at, reverse=True)
    return orders[:limit]


async def get_order(documents: DocumentStore, order_id: str, user: Optional[CurrentUser] = None) -> Order:
    doc = await documents.get_document(ORDERS, order_id)
    if doc is None:
        raise NotFoundError("Order not found")
    order = Order.model_validate(doc)
    # customers only ever see their own orders
    if user is not None and user.role == "customer" and order.user_id != user.id:
        raise NotFoundError("Order not found")
    return order


async def update_order_status(documents: DocumentStore, order_id: str, status: str,
                              payment_status: Optional[str] = None) -> Order:
    if status not in ORDER_STATUSES:
        raise ValidationError(f"Unknown order status: {status}")
    if payment_status is not None and payment_status not in PAYMENT_STATUSES:
        raise ValidationError(f"Unknown payment status: {payment_status}")
    order = await get_order(documents, order_id)
    order.status = status
    if payment_status:
        order.payment_status = payment_status
    order.updated_at = utcnow()
    await save_order(documents, order)
    return order


async def mark_paid(documents: DocumentStore, order_id: str, payment_ref: Optional[str] = None) -> Order:
    order = await get_order(documents, order_id)
    order.status = "paid"
    order.payment_status = "paid"
    if payment_ref:
        order.payment_ref = payment_ref
    order.updated_at = utcnow()
    await save_order(documents, order)
    logger.info("Order %s marked paid", order.order_number)
    return order

import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import AsyncIterator, Optional, List, Dict, Any, Literal

from fastapi import FastAPI, HTTPException, Depends, Header, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, EmailStr, Field
from passlib.context import CryptContext
import jwt
import stripe

import analytics
import orders
from config import (
    STORE_NAME,
    PRIMARY_CURRENCY,
    TAX_RATE,
    FREE_SHIPPING_THRESHOLD,
    FLAT_SHIPPING_FEE,
    JWT_SECRET,
    JWT_EXP_MIN,
    ALLOWED_ORIGINS,
    STRIPE_SECRET,
    STRIPE_WEBHOOK_SECRET,
    USERS,
    PORT,
)
from database import build_document_store
from errors import AuthRequiredError, NotFoundError, SyncError, ValidationError
from schemas import CurrentUser, Product, User, utcnow
from session import Session
from stores import CartStore
from sync import DocumentStore

# Logging
logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
logger = logging.getLogger("ramro")

# Security
pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")

app = FastAPI(title=f"{STORE_NAME} Storefront API", version="1.0.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in ALLOWED_ORIGINS] if ALLOWED_ORIGINS else ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@lru_cache()
def get_documents() -> DocumentStore:
    return build_document_store()


# Utilities
def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    return pwd_context.verify(password, password_hash)


def create_token(user: User) -> str:
    payload = {
        "sub": user.id,
        "email": user.email,
        "role": user.role,
        "exp": datetime.now(timezone.utc) + timedelta(minutes=JWT_EXP_MIN),
        "iat": datetime.now(timezone.utc),
    }
    return jwt.encode(payload, JWT_SECRET, algorithm="HS256")


def decode_token(token: str) -> CurrentUser:
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=["HS256"])
        return CurrentUser(id=payload["sub"], email=payload["email"], role=payload.get("role", "customer"))
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except (jwt.InvalidTokenError, KeyError):
        raise HTTPException(status_code=401, detail="Invalid token")


async def get_current_user(authorization: Optional[str] = Header(default=None),
                           documents: DocumentStore = Depends(get_documents)) -> Optional[CurrentUser]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise HTTPException(status_code=401, detail="Invalid authorization header")
    token_data = decode_token(token)
    if await documents.get_document(USERS, token_data.id) is None:
        raise HTTPException(status_code=401, detail="User not found")
    return token_data


async def require_user(user: Optional[CurrentUser] = Depends(get_current_user)) -> CurrentUser:
    if user is None:
        raise AuthRequiredError()
    return user


def require_role(user: CurrentUser, roles: List[str]):
    if user.role not in roles:
        raise HTTPException(status_code=403, detail="Forbidden")


@asynccontextmanager
async def user_session(user: CurrentUser, documents: DocumentStore) -> AsyncIterator[Session]:
    """A short-lived session for one request: load, mutate, wait for the pushes."""
    session = Session(documents)
    try:
        await session.sign_in(user, live=False)
        yield session
        await session.flush()
    finally:
        session.sign_out()


def user_payload(user: User) -> Dict[str, Any]:
    return {"id": user.id, "name": user.name, "email": user.email, "role": user.role}


def cart_payload(cart: CartStore) -> Dict[str, Any]:
    return {
        "items": [i.model_dump(mode="json") for i in cart.items],
        "itemCount": cart.item_count,
        "totals": cart.get_totals().model_dump(mode="json"),
        "stockWarnings": [i.product_id for i in cart.stock_warnings()],
    }


# Error handlers
def error_response(status_code: int, exc: Exception, **extra) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": str(exc), **extra})


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    return error_response(422, exc)


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return error_response(404, exc)


@app.exception_handler(SyncError)
async def sync_error_handler(request: Request, exc: SyncError):
    logger.warning("Sync failure on %s: %s", request.url.path, exc)
    return error_response(503, exc)


@app.exception_handler(AuthRequiredError)
async def auth_required_handler(request: Request, exc: AuthRequiredError):
    return error_response(401, exc, redirect=exc.redirect_to)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error: %s", exc)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


# Health and config
@app.get("/")
def root():
    return {"name": STORE_NAME, "status": "ok"}


@app.get("/config")
def get_config():
    return {
        "storeName": STORE_NAME,
        "currency": PRIMARY_CURRENCY,
        "taxRate": str(TAX_RATE),
        "shipping": {"freeThreshold": str(FREE_SHIPPING_THRESHOLD), "flatFee": str(FLAT_SHIPPING_FEE)},
        "payments": {"stripe": bool(STRIPE_SECRET)},
    }


# Auth
class RegisterDTO(BaseModel):
    name: str
    email: EmailStr
    password: str = Field(..., min_length=6)


class LoginDTO(BaseModel):
    email: EmailStr
    password: str


@app.post("/auth/register")
async def register(data: RegisterDTO, documents: DocumentStore = Depends(get_documents)):
    if await documents.find_documents(USERS, email=data.email):
        raise HTTPException(status_code=400, detail="Email already in use")
    user = User(id=uuid.uuid4().hex, name=data.name, email=data.email,
                password_hash=hash_password(data.password), role="customer", created_at=utcnow())
    await documents.set_document(USERS, user.id, user.model_dump(mode="json"))
    logger.info("Registered user %s", user.id)
    return {"token": create_token(user), "user": user_payload(user)}


@app.post("/auth/login")
async def login(data: LoginDTO, documents: DocumentStore = Depends(get_documents)):
    found = await documents.find_documents(USERS, email=data.email)
    user = User.model_validate(found[0]) if found else None
    if not user or not verify_password(data.password, user.password_hash):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    return {"token": create_token(user), "user": user_payload(user)}


@app.get("/auth/me")
async def me(user: CurrentUser = Depends(require_user), documents: DocumentStore = Depends(get_documents)):
    return user_payload(User.model_validate(await documents.get_document(USERS, user.id)))


# Cart
class AddItemDTO(BaseModel):
    product: Product
    quantity: int = 1


class QuantityDTO(BaseModel):
    quantity: int


@app.get("/cart")
async def cart_get(user: CurrentUser = Depends(require_user), documents: DocumentStore = Depends(get_documents)):
    async with user_session(user, documents) as session:
        return cart_payload(session.cart)


@app.post("/cart/items")
async def cart_add(data: AddItemDTO, user: CurrentUser = Depends(require_user),
                   documents: DocumentStore = Depends(get_documents)):
    async with user_session(user, documents) as session:
        session.cart.add_item(data.product, data.quantity)
        payload = cart_payload(session.cart)
    return payload


@app.patch("/cart/items/{product_id}")
async def cart_update(product_id: str, data: QuantityDTO, user: CurrentUser = Depends(require_user),
                      documents: DocumentStore = Depends(get_documents)):
    async with user_session(user, documents) as session:
        session.cart.update_quantity(product_id, data.quantity)
        payload = cart_payload(session.cart)
    return payload


@app.delete("/cart/items/{product_id}")
async def cart_remove(product_id: str, user: CurrentUser = Depends(require_user),
                      documents: DocumentStore = Depends(get_documents)):
    async with user_session(user, documents) as session:
        session.cart.remove_item(product_id)
        payload = cart_payload(session.cart)
    return payload


@app.delete("/cart")
async def cart_clear(user: CurrentUser = Depends(require_user), documents: DocumentStore = Depends(get_documents)):
    async with user_session(user, documents) as session:
        session.cart.clear()
        payload = cart_payload(session.cart)
    return payload


# Wishlist
def wishlist_payload(product_ids: List[str]) -> Dict[str, Any]:
    return {"productIds": product_ids, "count": len(product_ids)}


@app.get("/wishlist")
async def wishlist_get(user: CurrentUser = Depends(require_user), documents: DocumentStore = Depends(get_documents)):
    async with user_session(user, documents) as session:
        return wishlist_payload(session.wishlist.product_ids)


@app.post("/wishlist/{product_id}/toggle")
async def wishlist_toggle(product_id: str, user: CurrentUser = Depends(require_user),
                          documents: DocumentStore = Depends(get_documents)):
    async with user_session(user, documents) as session:
        in_wishlist = session.toggle_wishlist(product_id)
        ids = session.wishlist.product_ids
    return {"inWishlist": in_wishlist, **wishlist_payload(ids)}


@app.delete("/wishlist/{product_id}")
async def wishlist_remove(product_id: str, user: CurrentUser = Depends(require_user),
                          documents: DocumentStore = Depends(get_documents)):
    async with user_session(user, documents) as session:
        session.wishlist.remove_from_wishlist(product_id)
        ids = session.wishlist.product_ids
    return wishlist_payload(ids)


# Addresses
class AddressDTO(BaseModel):
    label: Literal["Home", "Work", "Other"] = "Home"
    custom_label: Optional[str] = None
    recipient_name: str
    recipient_phone: str
    full_address: str
    is_default: bool = False


class AddressUpdateDTO(BaseModel):
    label: Optional[Literal["Home", "Work", "Other"]] = None
    custom_label: Optional[str] = None
    recipient_name: Optional[str] = None
    recipient_phone: Optional[str] = None
    full_address: Optional[str] = None
    is_default: Optional[bool] = None


@app.get("/addresses")
async def addresses_list(user: CurrentUser = Depends(require_user), documents: DocumentStore = Depends(get_documents)):
    async with user_session(user, documents) as session:
        return [a.model_dump(mode="json") for a in session.addresses.addresses]


@app.post("/addresses")
async def addresses_add(data: AddressDTO, user: CurrentUser = Depends(require_user),
                        documents: DocumentStore = Depends(get_documents)):
    async with user_session(user, documents) as session:
        address = session.addresses.add_address(data.model_dump())
    return address.model_dump(mode="json")


@app.patch("/addresses/{address_id}")
async def addresses_update(address_id: str, data: AddressUpdateDTO, user: CurrentUser = Depends(require_user),
                           documents: DocumentStore = Depends(get_documents)):
    async with user_session(user, documents) as session:
        address = session.addresses.update_address(address_id, data.model_dump(exclude_unset=True))
    return address.model_dump(mode="json")


@app.delete("/addresses/{address_id}")
async def addresses_delete(address_id: str, user: CurrentUser = Depends(require_user),
                           documents: DocumentStore = Depends(get_documents)):
    async with user_session(user, documents) as session:
        session.addresses.delete_address(address_id)
    return {"id": address_id, "deleted": True}


@app.post("/addresses/{address_id}/default")
async def addresses_set_default(address_id: str, user: CurrentUser = Depends(require_user),
                                documents: DocumentStore = Depends(get_documents)):
    async with user_session(user, documents) as session:
        session.addresses.set_default_address(address_id)
    return {"id": address_id, "isDefault": True}


# Checkout
class CheckoutDTO(BaseModel):
    address_id: Optional[str] = None
    payment_provider: str = "dummy"  # dummy | stripe
    notes: Optional[str] = None


@app.post("/checkout")
async def checkout(data: CheckoutDTO, user: CurrentUser = Depends(require_user),
                   documents: DocumentStore = Depends(get_documents)):
    async with user_session(user, documents) as session:
        result = await orders.place_order(session, documents, address_id=data.address_id,
                                          payment_provider=data.payment_provider, notes=data.notes)
    return {
        "order_id": result.order.id,
        "order_number": result.order.order_number,
        "total": str(result.order.total),
        "client_secret": result.client_secret,
    }


# Orders
@app.get("/orders")
async def list_orders(user: CurrentUser = Depends(require_user), documents: DocumentStore = Depends(get_documents)):
    return [o.model_dump(mode="json") for o in await orders.list_orders(documents, user)]


@app.get("/orders/{order_id}")
async def get_order(order_id: str, user: CurrentUser = Depends(require_user),
                    documents: DocumentStore = Depends(get_documents)):
    return (await orders.get_order(documents, order_id, user)).model_dump(mode="json")


class OrderStatusDTO(BaseModel):
    status: str
    payment_status: Optional[str] = None


@app.post("/admin/orders/{order_id}/status")
async def update_order_status(order_id: str, data: OrderStatusDTO, user: CurrentUser = Depends(require_user),
                              documents: DocumentStore = Depends(get_documents)):
    require_role(user, ["admin", "staff"])
    await orders.update_order_status(documents, order_id, data.status, data.payment_status)
    return {"ok": True}


# Admin analytics
@app.get("/admin/analytics")
async def admin_analytics(days: int = 30, user: CurrentUser = Depends(require_user),
                          documents: DocumentStore = Depends(get_documents)):
    require_role(user, ["admin", "staff"])
    all_orders = await orders.list_orders(documents, user, limit=10_000)
    return analytics.summarize(all_orders, days=days).model_dump(mode="json")


# Stripe webhook (optional)
@app.post("/webhooks/stripe")
async def stripe_webhook(request: Request, documents: DocumentStore = Depends(get_documents)):
    if not STRIPE_SECRET:
        return {"ok": True}
    payload = await request.body()
    sig = request.headers.get("Stripe-Signature")
    try:
        if STRIPE_WEBHOOK_SECRET:
            event = stripe.Webhook.construct_event(payload, sig, STRIPE_WEBHOOK_SECRET)
        else:
            event = stripe.Event.construct_from(await request.json(), stripe.api_key)
    except (ValueError, stripe.SignatureVerificationError):
        return JSONResponse(status_code=400, content={"error": "Invalid payload"})

    if event["type"] == "payment_intent.succeeded":
        intent = event["data"]["object"]
        order_id = intent.get("metadata", {}).get("order_id")
        if order_id:
            await orders.mark_paid(documents, order_id, payment_ref=intent.get("id"))
    return {"received": True}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=PORT)

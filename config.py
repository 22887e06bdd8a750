import os
from decimal import Decimal

# Store
STORE_NAME = os.getenv("STORE_NAME", "Ramro")
PRIMARY_CURRENCY = os.getenv("PRIMARY_CURRENCY", "INR")

# Pricing
TAX_RATE = Decimal(os.getenv("TAX_RATE", "0.08"))  # 8%
FREE_SHIPPING_THRESHOLD = Decimal(os.getenv("FREE_SHIPPING_THRESHOLD", "500"))
FLAT_SHIPPING_FEE = Decimal(os.getenv("FLAT_SHIPPING_FEE", "50"))
CURRENCY_MINOR_UNIT = Decimal(os.getenv("CURRENCY_MINOR_UNIT", "0.01"))

# Security
JWT_SECRET = os.getenv("JWT_SECRET", "devsecret_change_me")
JWT_EXP_MIN = int(os.getenv("JWT_EXP_MIN", "60"))

# Storage
DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")
DOCUMENT_BACKEND = os.getenv("DOCUMENT_BACKEND", "mongo" if DATABASE_URL else "memory")
CACHE_DIR = os.getenv("CACHE_DIR")

CARTS = "carts"
WISHLISTS = "wishlists"
ADDRESSES = "addresses"
ORDERS = "orders"
USERS = "users"

# HTTP / payments
ALLOWED_ORIGINS = os.getenv("ALLOWED_ORIGINS", "*").split(",")
STRIPE_SECRET = os.getenv("STRIPE_SECRET_KEY")
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET")
PORT = int(os.getenv("PORT", "8000"))

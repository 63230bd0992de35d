"""
config.py — Environment-driven settings for the order service

Connection settings, storage backend selection and the fixed business rules
(tax, shipping, loyalty) used by checkout. Every value can be overridden via
an environment variable.
"""

import os
from decimal import Decimal

# Storage
MONGODB_URL = os.environ.get("MONGODB_URL", "mongodb://localhost:27017")
MONGODB_DATABASE = os.environ.get("MONGODB_DATABASE", "storefront")
STORAGE_BACKEND = os.environ.get("ORDER_SERVICE_STORAGE", "mongo")  # "mongo" | "memory"

# Logging / server
LOG_FILE = os.environ.get("ORDER_SERVICE_LOG_FILE", "order_service.log")
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
PORT = int(os.environ.get("PORT", 8000))

# Business rules (GST-style tax, INR amounts)
TAX_RATE = Decimal(os.environ.get("TAX_RATE", "0.18"))
FREE_SHIPPING_THRESHOLD = Decimal(os.environ.get("FREE_SHIPPING_THRESHOLD", "5000"))
FLAT_SHIPPING_FEE = Decimal(os.environ.get("FLAT_SHIPPING_FEE", "500"))
LOYALTY_ACCRUAL_RATE = Decimal(os.environ.get("LOYALTY_ACCRUAL_RATE", "0.01"))

RETURN_WINDOW_DAYS = int(os.environ.get("RETURN_WINDOW_DAYS", 7))

# Upper bound on a product's stock; a release past it indicates a double release.
MAX_STOCK_QUANTITY = int(os.environ.get("MAX_STOCK_QUANTITY", 1_000_000))

ORDER_NUMBER_PREFIX = os.environ.get("ORDER_NUMBER_PREFIX", "CH")

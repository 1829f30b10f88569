import os
from decimal import Decimal

SERVICE_NAME = "reservation-service"

DATABASE_URL = os.getenv("RESERVATION_DB")
REDIS_URL = os.getenv("REDIS_URL")  # optional: idempotency markers + circuit breaker
RABBIT_URL = os.getenv("RABBIT_URL")  # optional in dev, required if you want events

JWT_SECRET = os.getenv("JWT_SECRET")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM") or "HS256"

PAYMENT_PROCESSOR_URL = os.getenv("PAYMENT_PROCESSOR_URL") or "http://payment-processor:8000"
PAYMENT_PROCESSOR_API_KEY = os.getenv("PAYMENT_PROCESSOR_API_KEY")
PROCESSOR_TIMEOUT_SECONDS = float(os.getenv("PROCESSOR_TIMEOUT_SECONDS") or "5.0")

CURRENCY = os.getenv("CURRENCY") or "usd"

# ---- Fees ----
PLATFORM_FEE_RATE = Decimal(os.getenv("PLATFORM_FEE_RATE") or "0.00")
TAX_RATE = Decimal(os.getenv("TAX_RATE") or "0.00")
STRIPE_FEE_PERCENTAGE = Decimal(os.getenv("STRIPE_FEE_PERCENTAGE") or "0.029")
STRIPE_FEE_FIXED = Decimal(os.getenv("STRIPE_FEE_FIXED") or "0.29")

MIN_PAYOUT_AMOUNT = Decimal(os.getenv("MIN_PAYOUT_AMOUNT") or "10")
CANCELLATION_FEE_PERCENTAGE = Decimal(os.getenv("CANCELLATION_FEE_PERCENTAGE") or "0.3")
CANCELLATION_CUTOFF_HOURS = int(os.getenv("CANCELLATION_CUTOFF_HOURS") or "24")
RESCHEDULE_CUTOFF_HOURS = int(os.getenv("RESCHEDULE_CUTOFF_HOURS") or "24")

# ---- Booking rules ----
MIN_BOOKING_MINUTES = 15
MAX_NORMAL_BOOKING_HOURS = 24
MAX_CUSTOM_BOOKING_DAYS = 30

# ---- Maintenance worker ----
PAYMENT_PENDING_TTL_MINUTES = int(os.getenv("PAYMENT_PENDING_TTL_MINUTES") or "30")
MAINTENANCE_INTERVAL_SECONDS = float(os.getenv("MAINTENANCE_INTERVAL_SECONDS") or "60")
PAYOUT_BATCH_EVERY_TICKS = int(os.getenv("PAYOUT_BATCH_EVERY_TICKS") or "60")

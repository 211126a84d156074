import os
from pathlib import Path

from dotenv import load_dotenv

# Load .env from project root
env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(dotenv_path=env_path)

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./carebook.db")

# Fee policy
# One platform-wide rate; 5% matches the fee calculation fixtures (1000 -> 50)
PLATFORM_FEE_RATE = float(os.getenv("PLATFORM_FEE_RATE", "0.05"))
SUBSCRIPTION_DISCOUNT_RATE = float(os.getenv("SUBSCRIPTION_DISCOUNT_RATE", "0.10"))
DEFAULT_EMERGENCY_MULTIPLIER = float(os.getenv("DEFAULT_EMERGENCY_MULTIPLIER", "1.0"))

# Time policy (minutes)
# How long a doctor has to accept/reject a REQUESTED appointment before it auto-expires
DOCTOR_RESPONSE_WINDOW_MINUTES = int(os.getenv("DOCTOR_RESPONSE_WINDOW_MINUTES", "60"))
# Dispute window after the consultation ends before funds are paid out to the doctor
ESCROW_RELEASE_DELAY_MINUTES = int(os.getenv("ESCROW_RELEASE_DELAY_MINUTES", "60"))
# Max items a scheduler pass picks up; the rest are handled on the next pass
SCHEDULER_BATCH_SIZE = int(os.getenv("SCHEDULER_BATCH_SIZE", "500"))

# Payment gateway webhooks (Standard Webhooks style "whsec_..." secret)
PAYMENT_WEBHOOK_SECRET = os.getenv("PAYMENT_WEBHOOK_SECRET")
if not PAYMENT_WEBHOOK_SECRET:
    import warnings

    warnings.warn(
        "PAYMENT_WEBHOOK_SECRET not set! Payment webhooks will be rejected",
        RuntimeWarning,
        stacklevel=2,
    )

# Operator token for dispute resolution and manual releases
OPERATOR_API_TOKEN = os.getenv("OPERATOR_API_TOKEN")

# Currency used for gateway orders
CURRENCY = os.getenv("CURRENCY", "INR")

# Payment gateway REST endpoint; without it orders/refunds are only logged
PAYMENT_GATEWAY_URL = os.getenv("PAYMENT_GATEWAY_URL")
PAYMENT_GATEWAY_API_KEY = os.getenv("PAYMENT_GATEWAY_API_KEY")
PAYMENT_GATEWAY_TIMEOUT = float(os.getenv("PAYMENT_GATEWAY_TIMEOUT", "30"))

"""
Configuration and shared helpers
"""

import os
import uuid
from datetime import date, datetime, timezone
from pathlib import Path

import pytz
from dotenv import load_dotenv
from motor.motor_asyncio import AsyncIOMotorClient

# Load .env
ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# MongoDB
MONGO_URL = os.environ.get('MONGO_URL', 'mongodb://localhost:27017')
DB_NAME = os.environ.get('DB_NAME', 'agencydesk')

client = AsyncIOMotorClient(MONGO_URL)
db = client[DB_NAME]

# Public base URL of the frontend (approval links in emails)
PUBLIC_APP_URL = os.environ.get('PUBLIC_APP_URL', 'http://localhost:5173').rstrip('/')
CORS_ORIGINS = os.environ.get('CORS_ORIGINS', '*').split(',')

# Reverse proxies allowed to set X-Forwarded-For (signer IP on approvals)
TRUSTED_PROXIES = [p.strip() for p in os.environ.get('TRUSTED_PROXIES', '').split(',') if p.strip()]

# Email transport
SENDGRID_API_KEY = os.environ.get('SENDGRID_API_KEY', '')
SENDER_EMAIL = os.environ.get('SENDER_EMAIL', 'no-reply@agencydesk.local')
SENDER_NAME = os.environ.get('SENDER_NAME', 'AgencyDesk CRM')
SMTP_HOST = os.environ.get('SMTP_HOST', '')
SMTP_PORT = int(os.environ.get('SMTP_PORT', '465'))
SMTP_USER = os.environ.get('SMTP_USER', '')
SMTP_PASSWORD = os.environ.get('SMTP_PASSWORD', '')
SMTP_USE_SSL = os.environ.get('SMTP_USE_SSL', '1') == '1'

# Quotes
QUOTE_CURRENCY = os.environ.get('QUOTE_CURRENCY', 'ILS')
VAT_RATE_BP = int(os.environ.get('VAT_RATE_BP', '1800'))  # 18%
BUSINESS_TIMEZONE = pytz.timezone(os.environ.get('BUSINESS_TIMEZONE', 'Asia/Jerusalem'))

# Timeouts (seconds)
RENDER_TIMEOUT_SECONDS = float(os.environ.get('RENDER_TIMEOUT_SECONDS', '20'))
DISPATCH_TIMEOUT_SECONDS = float(os.environ.get('DISPATCH_TIMEOUT_SECONDS', '30'))
DISPATCH_LOCK_SECONDS = int(os.environ.get('DISPATCH_LOCK_SECONDS', '120'))

# PDF / signatures
PDF_FONT_PATH = os.environ.get('PDF_FONT_PATH', '')
MAX_SIGNATURE_BYTES = int(os.environ.get('MAX_SIGNATURE_BYTES', str(512 * 1024)))


# ==================== HELPERS ====================

def get_db():
    """FastAPI dependency returning the shared database handle."""
    return db


def generate_id() -> str:
    return str(uuid.uuid4())


def now_iso() -> str:
    """Current UTC time as ISO string"""
    return datetime.now(timezone.utc).isoformat()


def today_local() -> date:
    """Today's date in the business timezone (quote validity is date-only)."""
    return datetime.now(timezone.utc).astimezone(BUSINESS_TIMEZONE).date()


def is_valid_uuid(value: str) -> bool:
    try:
        uuid.UUID(str(value))
    except (ValueError, TypeError, AttributeError):
        return False
    return True

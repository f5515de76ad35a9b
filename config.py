import os

from dotenv import load_dotenv

load_dotenv()


def _bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


# Server
PORT = int(os.getenv("PORT", "8000"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

# Database
DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME", "marketplace")

# Auth
JWT_SECRET = os.getenv("JWT_SECRET", "supersecretkey")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", str(30 * 24 * 60)))
OTP_EXPIRE_MINUTES = int(os.getenv("OTP_EXPIRE_MINUTES", "15"))
DEFAULT_COUNTRY_CODE = os.getenv("DEFAULT_COUNTRY_CODE", "+91")

# Third party services
TWO_FACTOR_API_KEY = os.getenv("TWO_FACTOR_API_KEY")
GOOGLE_MAPS_API_KEY = os.getenv("GOOGLE_MAPS_API_KEY")

RAZORPAY_KEY_ID = os.getenv("RAZORPAY_KEY_ID")
RAZORPAY_KEY_SECRET = os.getenv("RAZORPAY_KEY_SECRET")
RAZORPAY_WEBHOOK_SECRET = os.getenv("RAZORPAY_WEBHOOK_SECRET")

R2_ENDPOINT = os.getenv("R2_ENDPOINT")
R2_ACCESS_KEY = os.getenv("R2_ACCESS_KEY")
R2_SECRET_KEY = os.getenv("R2_SECRET_KEY")
R2_BUCKET_NAME = os.getenv("R2_BUCKET_NAME")
R2_PUBLIC_URL = os.getenv("R2_PUBLIC_URL", "")

# Business rules
PLATFORM_FEE_PERCENT = float(os.getenv("PLATFORM_FEE_PERCENT", "5"))
ASSIGNMENT_RADIUS_KM = float(os.getenv("ASSIGNMENT_RADIUS_KM", "5"))
EXTENDED_ASSIGNMENT_RADIUS_KM = float(os.getenv("EXTENDED_ASSIGNMENT_RADIUS_KM", "10"))
ENABLE_ASSIGNMENT_SCHEDULER = _bool("ENABLE_ASSIGNMENT_SCHEDULER")
ASSIGNMENT_INTERVAL_SECONDS = int(os.getenv("ASSIGNMENT_INTERVAL_SECONDS", "60"))

# Request timeouts (seconds)
STANDARD_TIMEOUT = float(os.getenv("STANDARD_TIMEOUT", "30"))
UPLOAD_TIMEOUT = float(os.getenv("UPLOAD_TIMEOUT", "120"))
PAYMENT_TIMEOUT = float(os.getenv("PAYMENT_TIMEOUT", "45"))
REPORT_TIMEOUT = float(os.getenv("REPORT_TIMEOUT", "60"))

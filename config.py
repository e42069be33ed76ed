import os

from dotenv import load_dotenv

load_dotenv()

APP_ENV = os.getenv("APP_ENV", "production")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

JWT_SECRET = os.getenv("JWT_SECRET", "devsecret")
JWT_ALGO = "HS256"
JWT_EXPIRE_HOURS = int(os.getenv("JWT_EXPIRE_HOURS", "24"))
TOKEN_REFRESH_WINDOW_SECONDS = 3600

BCRYPT_ROUNDS = int(os.getenv("BCRYPT_ROUNDS", "12"))

CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

# ----------------------- Pricing -----------------------
TAX_RATE = 0.18
FREE_SHIPPING_ABOVE = 1000
SHIPPING_FEE = 50
LOW_STOCK_THRESHOLD = 10

# ----------------------- OTP / lockout -----------------------
OTP_TTL_MINUTES = 10
OTP_COOLDOWN_SECONDS = 60
OTP_MAX_ATTEMPTS = 5
ADMIN_MAX_LOGIN_ATTEMPTS = 5
ADMIN_LOCK_HOURS = 2
MIN_PASSWORD_LENGTH = 6

# ----------------------- Email -----------------------
SMTP_SERVER = os.getenv("SMTP_SERVER", "smtp.gmail.com")
SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
EMAIL_USER = os.getenv("EMAIL_USER", "")
EMAIL_PASSWORD = os.getenv("EMAIL_PASSWORD", "")
SHOP_NAME = os.getenv("SHOP_NAME", "Sindhu Crackers")

# ----------------------- Uploads -----------------------
UPLOAD_DIR = os.getenv("UPLOAD_DIR", "uploads")
MAX_UPLOAD_BYTES = 5 * 1024 * 1024
CLOUDINARY_URL = os.getenv("CLOUDINARY_URL", "")

# Update these with the shop's actual account
BANK_DETAILS = {
    "bank_name": os.getenv("BANK_NAME", "State Bank of India"),
    "account_name": os.getenv("BANK_ACCOUNT_NAME", SHOP_NAME),
    "account_number": os.getenv("BANK_ACCOUNT_NUMBER", "1234567890123456"),
    "ifsc_code": os.getenv("BANK_IFSC", "SBIN0001234"),
    "branch": os.getenv("BANK_BRANCH", "Main Branch, Chennai"),
    "upi_id": os.getenv("BANK_UPI_ID", "sindhucrackers@sbi"),
    "account_type": "Current Account",
    "instructions": [
        "Transfer the exact order amount to the above account",
        "Use your order number as reference/remark",
        "Take a screenshot of the successful transaction",
        "Upload the screenshot on the payment page",
        "We will verify and confirm your order within 24 hours",
    ],
}

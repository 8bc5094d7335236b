import os

from dotenv import load_dotenv

load_dotenv()

# ----------------------- Environment -----------------------
ENVIRONMENT = os.getenv("ENVIRONMENT", "development")
IS_PRODUCTION = ENVIRONMENT == "production"

CLIENT_URL = os.getenv("CLIENT_URL", "http://localhost:5173")
SERVER_URL = os.getenv("SERVER_URL", "http://localhost:8000")
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", CLIENT_URL).split(",") if o.strip()]

UPLOAD_DIR = os.getenv("UPLOAD_DIR", "uploads")

# ----------------------- Auth -----------------------
JWT_SECRET = os.getenv("JWT_SECRET", "devsecret")
JWT_ALGO = "HS256"
JWT_EXPIRE_DAYS = 7
COOKIE_NAME = "token"
COOKIE_MAX_AGE = JWT_EXPIRE_DAYS * 24 * 60 * 60
OAUTH_STATE_COOKIE = "oauth_state"
OAUTH_STATE_MINUTES = 10
BCRYPT_ROUNDS = int(os.getenv("BCRYPT_ROUNDS", 12))
PASSWORD_RESET_MINUTES = 10

GOOGLE_CLIENT_ID = os.getenv("GOOGLE_CLIENT_ID")
GOOGLE_CLIENT_SECRET = os.getenv("GOOGLE_CLIENT_SECRET")
GITHUB_CLIENT_ID = os.getenv("GITHUB_CLIENT_ID")
GITHUB_CLIENT_SECRET = os.getenv("GITHUB_CLIENT_SECRET")
LINKEDIN_CLIENT_ID = os.getenv("LINKEDIN_CLIENT_ID")
LINKEDIN_CLIENT_SECRET = os.getenv("LINKEDIN_CLIENT_SECRET")

# ----------------------- Integrations -----------------------
GEMINI_API_KEY = os.getenv("GEMINI_API_KEY")
GEMINI_MODEL = os.getenv("GEMINI_MODEL", "gemini-1.5-flash-latest")

SMTP_HOST = os.getenv("SMTP_HOST")
SMTP_PORT = int(os.getenv("SMTP_PORT", 587))
SMTP_USER = os.getenv("SMTP_USER")
SMTP_PASS = os.getenv("SMTP_PASS")
FROM_NAME = os.getenv("FROM_NAME", "Cook-N-Crop")
FROM_EMAIL = os.getenv("FROM_EMAIL", "noreply@cookncrop.com")

# ----------------------- Rate limits -----------------------
RATE_LIMIT_ENABLED = os.getenv("RATE_LIMIT_ENABLED", "true").lower() != "false"
RATE_LIMIT_GENERAL = "200 per 15 minutes" if IS_PRODUCTION else "10000 per 15 minutes"
RATE_LIMIT_AUTH = "30 per 15 minutes" if IS_PRODUCTION else "1000 per 15 minutes"
RATE_LIMIT_UPLOAD = "20 per 15 minutes" if IS_PRODUCTION else "100 per 15 minutes"

# ----------------------- Pagination -----------------------
POSTS_PER_PAGE = 9
PRODUCTS_PER_PAGE = 12
USERS_PER_PAGE = 12
SEARCH_RESULTS_LIMIT = 5
NOTIFICATIONS_LIMIT = 20
MESSAGES_PER_PAGE = 50
ADMIN_PAGE_SIZE = 10
GROUP_POSTS_PER_PAGE = 10

# ----------------------- Content limits -----------------------
TITLE_MIN_LENGTH = 3
TITLE_MAX_LENGTH = 200
CONTENT_MIN_LENGTH = 10
CONTENT_MAX_LENGTH = 10000
COMMENT_MAX_LENGTH = 2000
USERNAME_MIN_LENGTH = 3
USERNAME_MAX_LENGTH = 30
USERNAME_PATTERN = r"^[a-zA-Z0-9_]+$"
PASSWORD_MIN_LENGTH = 6
BIO_MAX_LENGTH = 500
MAX_TAGS = 5
MAX_MENTIONS = 10
MAX_HASHTAGS = 20
SEARCH_MIN_LENGTH = 2
SEARCH_MAX_LENGTH = 100

# ----------------------- Misc -----------------------
NOTIFICATION_DEDUP_MINUTES = 5
SOCKET_SWEEP_SECONDS = 300
LOW_STOCK_THRESHOLD = 10
TRENDING_DAYS = 7
TRENDING_LIMIT = 10
DEFAULT_PROFILE_PIC = "/uploads/profilePics/default.png"
DEFAULT_GROUP_COVER = "/uploads/groupCovers/default.jpg"

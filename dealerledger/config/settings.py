"""
Application settings and configuration
"""
import os
from dotenv import load_dotenv

load_dotenv()

class Settings:
    # Application
    APP_NAME = "Dealer Ledger"
    VERSION = "1.0.0"
    DEBUG = os.getenv("DEBUG", "True") == "True"
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

    # Security
    SECRET_KEY = os.getenv("SECRET_KEY", "your-secret-key-change-in-production")
    ALGORITHM = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES = 60 * 24  # 24 hours

    # CORS
    ALLOWED_ORIGINS = [
        origin.strip()
        for origin in os.getenv("ALLOWED_ORIGINS", "http://localhost:3000,http://localhost:5173").split(",")
        if origin.strip()
    ]

    # Pagination
    DEFAULT_PAGE_SIZE = 20
    MAX_PAGE_SIZE = 100

    # Dates are stored naive UTC and rendered in the dealership's timezone
    TIMEZONE = os.getenv("TIMEZONE", "Asia/Kolkata")

    # Multi-document writes: "auto" probes the server, "on"/"off" force the mode
    MONGO_TRANSACTIONS = os.getenv("MONGO_TRANSACTIONS", "auto").lower()

    # Vehicle status thresholds (percentage of discounted amount received)
    SOLD_THRESHOLD = float(os.getenv("SOLD_THRESHOLD", "100"))
    IN_TRANSIT_THRESHOLD = float(os.getenv("IN_TRANSIT_THRESHOLD", "50"))

settings = Settings()

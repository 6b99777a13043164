"""
Runtime configuration for the Civic Triage API.

Values are read from the environment once, at import time.
"""

import os

APP_NAME = "Civic Triage API"

JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret-change")
JWT_ALG = "HS256"
JWT_EXPIRE_MINUTES = int(os.getenv("JWT_EXPIRE_MINUTES", 60 * 24))  # 1 day
JWT_REFRESH_SECRET = os.getenv("JWT_REFRESH_SECRET", JWT_SECRET + "-refresh")
JWT_REFRESH_EXPIRE_MINUTES = int(os.getenv("JWT_REFRESH_EXPIRE_MINUTES", 60 * 24 * 30))  # 30 days

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FORMAT = os.getenv("LOG_FORMAT", "json")  # 'json' or 'console'

GEOCODING_ENABLED = os.getenv("GEOCODING_ENABLED", "true").lower() in ("1", "true", "yes")
GEOCODER_URL = os.getenv("GEOCODER_URL", "https://nominatim.openstreetmap.org/reverse")
GEOCODER_TIMEOUT = float(os.getenv("GEOCODER_TIMEOUT", "3.0"))
GEOCODER_USER_AGENT = os.getenv("GEOCODER_USER_AGENT", "CivicTriage/1.0")

# Category -> owning department
CATEGORY_TO_DEPARTMENT = {
    "pothole": "road",
    "garbage": "sanitation",
    "streetlight": "streetlight",
    "water-logging": "drainage",
    "toilet": "toilet",
    "water-supply": "water-supply",
    "drainage": "drainage",
    "waste-management": "waste-management",
    "park": "park",
    "other": "general",
}

# Department -> canonical category. 'drainage' owns two categories and maps
# back to 'water-logging' only.
DEPARTMENT_TO_CATEGORY = {
    "road": "pothole",
    "sanitation": "garbage",
    "streetlight": "streetlight",
    "drainage": "water-logging",
    "toilet": "toilet",
    "water-supply": "water-supply",
    "waste-management": "waste-management",
    "park": "park",
    "general": "other",
}

"""
Runtime settings for the Afrimercato delivery service.

Every value can be overridden through the environment; defaults suit local
development against a MongoDB on localhost.
"""
import os

# Auth
SECRET_KEY = os.getenv("SECRET_KEY", "secret-key-change-me")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", 60 * 12))

# Database
DATABASE_URL = os.getenv("DATABASE_URL", "mongodb://localhost:27017")
DATABASE_NAME = os.getenv("DATABASE_NAME", "afrimercato")

# Logging / errors
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
EXPOSE_ERRORS = os.getenv("EXPOSE_ERRORS", "false").lower() in ("1", "true", "yes")

# Pricing
RIDER_EARNINGS_SHARE = float(os.getenv("RIDER_EARNINGS_SHARE", 0.8))
DEFAULT_DELIVERY_FEE = float(os.getenv("DEFAULT_DELIVERY_FEE", 3.99))
TAX_RATE = float(os.getenv("TAX_RATE", 0))
ORDER_NUMBER_PREFIX = os.getenv("ORDER_NUMBER_PREFIX", "AFM")

# Dispatch
DEFAULT_SEARCH_RADIUS_KM = float(os.getenv("DEFAULT_SEARCH_RADIUS_KM", 10))
AVERAGE_RIDER_SPEED_KMH = float(os.getenv("AVERAGE_RIDER_SPEED_KMH", 20))
ESTIMATED_PICKUP_MINUTES = int(os.getenv("ESTIMATED_PICKUP_MINUTES", 30))
ESTIMATED_DELIVERY_MINUTES = int(os.getenv("ESTIMATED_DELIVERY_MINUTES", 60))

import os
import logging
from typing import Optional
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

# Database configuration
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./tripops.db")

# Rate configuration
RATE_CATEGORY = os.getenv("RATE_CATEGORY", "GLOBAL")

# Operational alert thresholds
HIGH_RISK_THRESHOLD = float(os.getenv("HIGH_RISK_THRESHOLD", "0.3"))
COMMITMENT_ALERT_MINUTES = int(os.getenv("COMMITMENT_ALERT_MINUTES", "60"))

# WebSocket configuration
WS_MAX_CONNECTIONS = int(os.getenv("WS_MAX_CONNECTIONS", "100"))

# API configuration
API_DEFAULT_LIMIT = int(os.getenv("API_DEFAULT_LIMIT", "50"))
API_MAX_LIMIT = int(os.getenv("API_MAX_LIMIT", "500"))

# Logging configuration
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FORMAT = os.getenv("LOG_FORMAT", "%(asctime)s - %(name)s - %(levelname)s - %(message)s")
LOG_FILE = os.getenv("LOG_FILE", "tripops.log")

# Development configuration
DEBUG = os.getenv("DEBUG", "false").lower() == "true"
ENABLE_CORS = os.getenv("ENABLE_CORS", "true").lower() == "true"

class Config:
    """Configuration class with runtime overrides."""

    def __init__(self):
        self.database_url = DATABASE_URL
        self.rate_category = RATE_CATEGORY

        # Alert thresholds
        self.high_risk_threshold = HIGH_RISK_THRESHOLD
        self.commitment_alert_minutes = COMMITMENT_ALERT_MINUTES

        # WebSocket settings
        self.ws_max_connections = WS_MAX_CONNECTIONS

        # API settings
        self.api_default_limit = API_DEFAULT_LIMIT
        self.api_max_limit = API_MAX_LIMIT

        # Logging
        self.log_level = LOG_LEVEL
        self.log_format = LOG_FORMAT
        self.log_file = LOG_FILE

        # Development
        self.debug = DEBUG
        self.enable_cors = ENABLE_CORS

    def update_alert_thresholds(self,
                                high_risk_threshold: Optional[float] = None,
                                commitment_alert_minutes: Optional[int] = None):
        """Update operational alert thresholds at runtime."""
        if high_risk_threshold is not None:
            self.high_risk_threshold = high_risk_threshold
        if commitment_alert_minutes is not None:
            self.commitment_alert_minutes = commitment_alert_minutes

    def get_alert_config(self) -> dict:
        """Get alert configuration as dictionary."""
        return {
            "high_risk_threshold": self.high_risk_threshold,
            "commitment_alert_minutes": self.commitment_alert_minutes
        }

# Global configuration instance
config = Config()

def setup_logging():
    """Setup logging configuration."""
    logging.basicConfig(
        level=getattr(logging, config.log_level),
        format=config.log_format,
        handlers=[
            logging.FileHandler(config.log_file),
            logging.StreamHandler()
        ]
    )

    # Set specific logger levels
    logging.getLogger("uvicorn").setLevel(logging.INFO)
    logging.getLogger("fastapi").setLevel(logging.INFO)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    return logging.getLogger(__name__)

# Initialize logger
logger = setup_logging()

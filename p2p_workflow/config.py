"""
Configuration for the procure-to-pay workflow engine.
"""

# Load environment variables FIRST
from dotenv import load_dotenv
load_dotenv()

import os
from typing import Dict, List, Optional, Set, Tuple


def _parse_list(value: str) -> List[str]:
    return [item.strip().lower() for item in value.split(",") if item.strip()]


KNOWN_SIDE_EFFECTS = {"commitment", "inventory"}


class Config:
    """Base configuration."""

    # Approval routing
    APPROVAL_DUE_HOURS: int = int(os.getenv("APPROVAL_DUE_HOURS", "48"))
    AUTO_APPROVE_LIMIT: float = float(os.getenv("AUTO_APPROVE_LIMIT", "1000"))
    # (level, inclusive ceiling); None means unbounded
    APPROVAL_LEVELS: List[Tuple[str, Optional[float]]] = [
        ("manager", float(os.getenv("APPROVAL_MANAGER_LIMIT", "10000"))),
        ("director", float(os.getenv("APPROVAL_DIRECTOR_LIMIT", "100000"))),
        ("cfo", None),
    ]
    DEFAULT_APPROVERS: Dict[str, str] = {
        "manager": os.getenv("DEFAULT_MANAGER_APPROVER", "approver-manager"),
        "director": os.getenv("DEFAULT_DIRECTOR_APPROVER", "approver-director"),
        "cfo": os.getenv("DEFAULT_CFO_APPROVER", "approver-cfo"),
    }

    # Matching thresholds
    MATCH_AMOUNT_TOLERANCE: float = float(os.getenv("MATCH_AMOUNT_TOLERANCE", "0.02"))  # 2% tolerance
    MATCH_QUANTITY_TOLERANCE: float = float(os.getenv("MATCH_QUANTITY_TOLERANCE", "0.05"))  # 5% tolerance
    DUPLICATE_INVOICE_SIMILARITY: float = float(os.getenv("DUPLICATE_INVOICE_SIMILARITY", "90"))

    # Payments
    BATCH_CONCURRENCY: int = int(os.getenv("BATCH_CONCURRENCY", "5"))
    GATEWAY_TIMEOUT_SECONDS: float = float(os.getenv("GATEWAY_TIMEOUT_SECONDS", "10"))
    # A payment stuck in processing this long is handed to an operator
    STALE_PROCESSING_SECONDS: int = int(os.getenv("STALE_PROCESSING_SECONDS", "900"))
    DEFAULT_PAYMENT_METHOD: str = os.getenv("DEFAULT_PAYMENT_METHOD", "ach")

    # Anomaly detection
    ANOMALY_PERIOD_DAYS: int = int(os.getenv("ANOMALY_PERIOD_DAYS", "30"))
    DUPLICATE_PO_WINDOW_SECONDS: int = int(os.getenv("DUPLICATE_PO_WINDOW_SECONDS", "300"))
    MAVERICK_THRESHOLD: float = float(os.getenv("MAVERICK_THRESHOLD", "5000"))
    OUTLIER_TRAILING_DAYS: int = int(os.getenv("OUTLIER_TRAILING_DAYS", "90"))
    OUTLIER_FACTOR: float = float(os.getenv("OUTLIER_FACTOR", "3.0"))

    # Dispatch
    IN_FLIGHT_TTL_SECONDS: float = float(os.getenv("IN_FLIGHT_TTL_SECONDS", "30"))
    GRAPH_RECURSION_LIMIT: int = 25

    # Side effects that fail the whole call instead of being reported as partial failures.
    # Notifications are never strict.
    STRICT_SIDE_EFFECTS: Set[str] = set(_parse_list(os.getenv("STRICT_SIDE_EFFECTS", "")))

    # Logging
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
    LOG_FORMAT: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    LOG_FILE: str = os.getenv("LOG_FILE", "p2p_workflow.log")

    # API Configuration
    API_HOST: str = os.getenv("API_HOST", "0.0.0.0")
    API_PORT: int = int(os.getenv("API_PORT", "8000"))
    API_DEBUG: bool = os.getenv("API_DEBUG", "false").lower() == "true"

    def validate(self) -> None:
        """Validate configuration."""
        for name in (
            "AUTO_APPROVE_LIMIT",
            "MATCH_AMOUNT_TOLERANCE",
            "MATCH_QUANTITY_TOLERANCE",
            "MAVERICK_THRESHOLD",
        ):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must not be negative")

        if self.BATCH_CONCURRENCY <= 0:
            raise ValueError("BATCH_CONCURRENCY must be positive")

        if self.GATEWAY_TIMEOUT_SECONDS <= 0:
            raise ValueError("GATEWAY_TIMEOUT_SECONDS must be positive")

        if self.STALE_PROCESSING_SECONDS <= 0:
            raise ValueError("STALE_PROCESSING_SECONDS must be positive")

        if self.OUTLIER_FACTOR <= 0:
            raise ValueError("OUTLIER_FACTOR must be positive")

        unknown = set(self.STRICT_SIDE_EFFECTS) - KNOWN_SIDE_EFFECTS
        if unknown:
            raise ValueError(f"Invalid STRICT_SIDE_EFFECTS: {', '.join(sorted(unknown))}")

    def approval_level_for(self, amount: float) -> str:
        """Return the approval level whose ceiling covers the amount."""
        for level, ceiling in self.APPROVAL_LEVELS:
            if ceiling is None or amount <= ceiling:
                return level
        return self.APPROVAL_LEVELS[-1][0]

    def is_strict(self, side_effect: str) -> bool:
        return side_effect in self.STRICT_SIDE_EFFECTS


class DevelopmentConfig(Config):
    """Development configuration."""
    LOG_LEVEL = "DEBUG"
    API_DEBUG = True


class ProductionConfig(Config):
    """Production configuration."""
    LOG_LEVEL = "INFO"
    API_DEBUG = False


class TestConfig(Config):
    """Test configuration."""
    LOG_LEVEL = "DEBUG"
    LOG_FILE = ""
    GATEWAY_TIMEOUT_SECONDS = 1.0


def get_config(env: str = None) -> Config:
    """Get configuration based on environment."""
    if env is None:
        env = os.getenv("ENV", "development").lower()

    if env == "production":
        config = ProductionConfig()
    elif env == "test":
        config = TestConfig()
    else:
        config = DevelopmentConfig()

    # Validate configuration on creation
    config.validate()
    return config

"""
Structured logging for the workflow engine.
"""

import logging
import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from p2p_workflow.config import get_config


config = get_config()


class StructuredFormatter(logging.Formatter):
    """Formats log records as structured JSON."""

    def format(self, record: logging.LogRecord) -> str:
        log_obj = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if hasattr(record, "extra"):
            log_obj.update(record.extra)

        return json.dumps(log_obj, default=str)


def setup_logging(name: str = __name__) -> logging.Logger:
    """Setup and return a configured logger."""
    logger = logging.getLogger(name)
    logger.setLevel(getattr(logging, config.LOG_LEVEL))

    # Loggers are module-level; attach handlers only once
    if logger.handlers:
        return logger

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(getattr(logging, config.LOG_LEVEL))
    console_handler.setFormatter(logging.Formatter(config.LOG_FORMAT))
    logger.addHandler(console_handler)

    # File handler with structured JSON
    if config.LOG_FILE:
        file_handler = logging.FileHandler(config.LOG_FILE)
        file_handler.setLevel(getattr(logging, config.LOG_LEVEL))
        file_handler.setFormatter(StructuredFormatter())
        logger.addHandler(file_handler)

    return logger


def log_stage_action(
    logger: logging.Logger,
    stage: str,
    action: str,
    details: Optional[Dict[str, Any]] = None,
) -> None:
    """Log a stage action with context."""
    extra = {
        "stage": stage,
        "action": action,
    }
    if details:
        extra.update(details)

    logger.info(
        f"[{stage}] {action}",
        extra={"extra": extra}
    )


def log_partial_failure(
    logger: logging.Logger,
    stage: str,
    side_effect: str,
    entity_id: str,
    error: str,
) -> None:
    """Log a side effect that failed while the primary transition succeeded."""
    extra = {
        "type": "partial_failure",
        "stage": stage,
        "side_effect": side_effect,
        "entity_id": entity_id,
        "error": error,
    }
    logger.error(
        f"[{stage}] {side_effect} failed for {entity_id}: {error}",
        extra={"extra": extra}
    )


def log_anomaly(
    logger: logging.Logger,
    anomaly_type: str,
    entity_id: str,
    confidence: float,
    description: str,
) -> None:
    """Log a detected anomaly."""
    extra = {
        "type": "anomaly",
        "anomaly_type": anomaly_type,
        "entity_id": entity_id,
        "confidence": confidence,
        "description": description,
    }
    logger.warning(
        f"Anomaly detected: {anomaly_type} on {entity_id} (confidence {confidence:.2f})",
        extra={"extra": extra}
    )

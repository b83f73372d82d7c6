"""Centralized logging service using loguru."""

import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from loguru import logger

from research_engine.config import settings

# Remove default handler
logger.remove()

# Add console handler with color
logger.add(
    sys.stderr,
    format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>",
    level=settings.app_log_level.upper(),
    colorize=True,
)

if settings.log_to_file:
    LOG_DIR = Path(settings.log_dir)
    LOG_DIR.mkdir(exist_ok=True)
    logger.add(
        LOG_DIR / "research_engine_{time:YYYY-MM-DD}.log",
        format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} - {message}",
        level="DEBUG",
        rotation="00:00",  # New file at midnight
        retention="7 days",
        compression="zip",
    )

# Reduce noise from network libraries
for logger_name in (
    "httpx",
    "httpcore",
    "hpack",
    "openai._base_client",
    "asyncio",
):
    logging.getLogger(logger_name).setLevel(settings.noisy_log_level.upper())


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def log_llm_call(
    model: str,
    caller: str,
    input_tokens: int = 0,
    output_tokens: int = 0,
    duration_ms: int = 0,
    status: str = "success",
    error: Optional[str] = None,
) -> None:
    """Log a strategist LLM call."""
    call_data = {
        "timestamp": _now(),
        "model": model,
        "caller": caller,
        "input_tokens": input_tokens,
        "output_tokens": output_tokens,
        "total_tokens": input_tokens + output_tokens,
        "duration_ms": duration_ms,
        "status": status,
        "error": error,
    }
    if error:
        logger.error(f"LLM_CALL_FAILED: {call_data}")
    else:
        logger.info(f"LLM_CALL: {call_data}")


def log_provider_call(
    provider: str,
    requested: int,
    returned: int,
    duration_ms: int,
    error: Optional[str] = None,
) -> None:
    """Log one provider fetch inside a round."""
    call_data = {
        "timestamp": _now(),
        "provider": provider,
        "requested": requested,
        "returned": returned,
        "duration_ms": duration_ms,
        "error": error,
    }
    if error:
        logger.warning(f"PROVIDER_CALL_FAILED: {call_data}")
    else:
        logger.debug(f"PROVIDER_CALL: {call_data}")


def log_research_step(
    session_id: str,
    step_type: str,
    status: str,
    data: Optional[dict] = None,
) -> None:
    """Log a research step."""
    step_data = {
        "timestamp": _now(),
        "session_id": session_id,
        "step_type": step_type,
        "status": status,
        "data": data,
    }
    logger.info(f"RESEARCH_STEP: {step_data}")


def log_event(
    event_type: str,
    message: str,
    **kwargs: Any,
) -> None:
    """Log a generic event."""
    event_data = {
        "timestamp": _now(),
        "event_type": event_type,
        "message": message,
        **kwargs,
    }
    logger.info(f"EVENT: {event_data}")

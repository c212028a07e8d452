"""Error taxonomy and invariant enforcement."""
from __future__ import annotations

import logging
import os
from typing import Optional

from .config import Settings
from .telemetry import get_telemetry

logger = logging.getLogger(__name__)

STRICT_ENV = "GREEN_LOOM_STRICT_INVARIANTS"


class ConfigurationError(ValueError):
    """Raised when a content asset (coordinator, template, narrative) is malformed."""


class InvariantViolation(AssertionError):
    """Raised in strict mode when engine bookkeeping breaks an invariant."""


class StoreConflictError(RuntimeError):
    """Raised when a versioned write keeps losing the compare-and-swap race."""


def strict_mode(settings: Optional[Settings] = None) -> bool:
    """Return whether invariant violations should fail fast."""

    value = os.getenv(STRICT_ENV)
    if value is not None:
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(settings.strict_invariants) if settings is not None else False


def enforce(condition: bool, message: str, settings: Optional[Settings] = None) -> bool:
    """Check an invariant.

    Returns ``True`` when the condition holds. When it does not, strict mode
    raises :class:`InvariantViolation`; otherwise the violation is logged and
    ``False`` is returned so the caller can clamp and carry on.
    """

    if condition:
        return True
    strict = strict_mode(settings)
    get_telemetry().track_invariant(message, strict)
    if strict:
        raise InvariantViolation(message)
    logger.warning("Invariant violated, clamping: %s", message)
    return False


__all__ = [
    "ConfigurationError",
    "InvariantViolation",
    "StoreConflictError",
    "enforce",
    "strict_mode",
]

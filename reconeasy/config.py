# reconeasy/config.py
# Immutable runtime configuration, read once from the environment.

from __future__ import annotations

import math
import os
from dataclasses import dataclass, field, replace

from reconeasy.errors import InvalidInput


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw.strip())
    except ValueError:
        raise InvalidInput(f"{name} must be a number, got {raw!r}")
    if not math.isfinite(value):
        raise InvalidInput(f"{name} must be finite, got {raw!r}")
    return value


def _env_int(name: str, default: int) -> int:
    value = _env_float(name, default)
    if value != int(value):
        raise InvalidInput(f"{name} must be a whole number, got {value}")
    return int(value)


@dataclass(frozen=True)
class NotificationConfig:
    """Rate-card expiry windows. Delivery (email/webhook) lives elsewhere."""

    warning_days: int = 30
    reminder_days: int = 7

    def issues(self) -> list[str]:
        out = []
        if not 1 <= self.warning_days <= 365:
            out.append("warning_days must be a number between 1 and 365")
        if not 1 <= self.reminder_days <= 365:
            out.append("reminder_days must be a number between 1 and 365")
        return out


@dataclass(frozen=True)
class ReconConfig:
    # |expected - actual| above this is a mismatch; absorbs rounding noise
    tolerance: float = 1.0
    # applied when a rate card leaves GST / TCS blank
    default_gst_percent: float = 18.0
    default_tcs_percent: float = 1.0
    notifications: NotificationConfig = field(default_factory=NotificationConfig)

    def __post_init__(self):
        if not math.isfinite(self.tolerance) or self.tolerance < 0:
            raise InvalidInput(f"tolerance must be a non-negative number, got {self.tolerance}")
        for name in ("default_gst_percent", "default_tcs_percent"):
            value = getattr(self, name)
            if not 0 <= value <= 100:
                raise InvalidInput(f"{name} must be between 0 and 100, got {value}")
        issues = self.notifications.issues()
        if issues:
            raise InvalidInput("; ".join(issues))

    @property
    def tax_defaults(self) -> dict:
        return {"gst_percent": self.default_gst_percent, "tcs_percent": self.default_tcs_percent}

    def with_tolerance(self, tolerance: float) -> "ReconConfig":
        return replace(self, tolerance=tolerance)


def load_config() -> ReconConfig:
    """Build the config from RECON_* / RATE_CARD_* environment variables."""
    notifications = NotificationConfig(
        warning_days=_env_int("RATE_CARD_WARNING_DAYS", 30),
        reminder_days=_env_int("RATE_CARD_REMINDER_DAYS", 7),
    )
    return ReconConfig(
        tolerance=_env_float("RECON_TOLERANCE", 1.0),
        default_gst_percent=_env_float("RECON_DEFAULT_GST_PERCENT", 18.0),
        default_tcs_percent=_env_float("RECON_DEFAULT_TCS_PERCENT", 1.0),
        notifications=notifications,
    )

# Overview: Key/value settings store with config fallbacks.

from __future__ import annotations

from flask import current_app

from ..errors import ValidationError
from ..extensions import db
from ..models import Setting
from .concurrency import run_with_retry


RETURN_WINDOW_KEY = "returns.window_days"


def get_setting(key: str, default: str | None = None) -> str | None:
    row = db.session.query(Setting).filter_by(key=key).first()
    if row is None:
        return default
    return row.value


def set_setting(key: str, value, description: str | None = None) -> Setting:
    """Create or overwrite a setting (commits)."""
    if not key:
        raise ValidationError("key is required", field="key")

    def _op() -> Setting:
        row = db.session.query(Setting).filter_by(key=key).first()
        if row is None:
            row = Setting(key=key, value=str(value), description=description)
            db.session.add(row)
        else:
            row.value = str(value)
            if description is not None:
                row.description = description
        db.session.commit()
        current_app.logger.info("Setting %s updated to %s", key, value)
        return row

    return run_with_retry(_op)


def get_return_window_days() -> int:
    """Return window in days: settings table first, then RETURN_WINDOW_DAYS config."""
    default = int(current_app.config.get("RETURN_WINDOW_DAYS", 30))
    raw = get_setting(RETURN_WINDOW_KEY)
    if raw is None:
        return default
    try:
        days = int(raw)
    except ValueError:
        current_app.logger.warning("Ignoring non-integer %s setting: %r", RETURN_WINDOW_KEY, raw)
        return default
    if days < 0:
        current_app.logger.warning("Ignoring negative %s setting: %r", RETURN_WINDOW_KEY, raw)
        return default
    return days


def set_return_window_days(days: int) -> Setting:
    if days < 0:
        raise ValidationError("Return window must be zero or more days", field="days")
    return set_setting(RETURN_WINDOW_KEY, days, description="Days after a sale during which returns are accepted")

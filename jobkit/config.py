import os

DB_FILE = os.environ.get("JOBKIT_DB", "jobkit.db")
LOG_LEVEL = os.environ.get("JOBKIT_LOG_LEVEL", "info")

DEFAULT_CONFIG = {
    "poll_interval_seconds": "5",
    "timeout_seconds": "20",
    "worker_count": "1",
}

ALLOWED_CONFIG_KEYS = set(DEFAULT_CONFIG.keys())


def validate_config_value(key: str, value) -> str:
    if key not in ALLOWED_CONFIG_KEYS:
        raise ValueError(f"Allowed keys: {', '.join(sorted(ALLOWED_CONFIG_KEYS))}")
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValueError(f"{key} must be a number, got {value!r}")
    if number <= 0:
        raise ValueError(f"{key} must be > 0")
    if key == "worker_count" and not number.is_integer():
        raise ValueError("worker_count must be an integer")
    return str(value)

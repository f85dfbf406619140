import importlib
from datetime import datetime, timezone


def now_iso() -> str:
    """UTC timestamp like '2025-11-06T09:12:34.123456Z'.

    Always carries microseconds so stored values sort lexically.
    """
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def import_object(path: str):
    """Import 'package.module:attr' and return the attribute."""
    module_name, sep, attr = path.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"Expected 'module:attribute', got {path!r}")
    module = importlib.import_module(module_name)
    try:
        return getattr(module, attr)
    except AttributeError:
        raise ValueError(f"Module {module_name!r} has no attribute {attr!r}")

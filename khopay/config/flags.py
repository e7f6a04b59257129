"""
Feature flags for KhoAugment Pay
"""
import os

_TRUTHY = {"1", "true", "yes", "on"}


def flag(name: str, default: bool = False) -> bool:
    """
    Read a FEATURE_* toggle from the environment.
    Unset or empty values fall back to the default.
    """
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in _TRUTHY

from .flags import flag
from .settings import Settings, settings, validate_settings

__all__ = ["Settings", "flag", "settings", "validate_settings"]

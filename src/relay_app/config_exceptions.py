"""Configuration exceptions."""

class ConfigLoadError(Exception):
    """Raised when configuration fails to load."""
    pass

class ConfigValidationError(Exception):
    """Raised when configuration validation fails."""

    def __init__(self, setting: str, message: str):
        self.setting = setting
        super().__init__(f"{setting}: {message}")

class WavegridError(Exception):
    """Base class for launcher errors."""


class ConfigurationError(WavegridError):
    """Raised for invalid launch settings, always before any process is spawned."""

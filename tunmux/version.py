"""Version information for the tunnel protocol."""

VERSION = "0.26.17"

_MINIMUM_COMPATIBLE_VERSION = "0.26.0"


def get_version() -> str:
    """Return the oldest peer version this implementation stays compatible with."""
    return _MINIMUM_COMPATIBLE_VERSION
"""Exception types shared across the library."""


class ConfigurationError(Exception):
    """Raised for configuration bugs: unknown capability, unregistered provider, missing key."""


class GenerationError(Exception):
    """Raised when a model returned a response that cannot be used (e.g. invalid JSON)."""


class GenerationCancelled(Exception):
    """Raised when a CancelToken fires at a suspension point."""


class ModeratorProtocolError(Exception):
    """Raised when the moderator answers with anything but one valid control tool call."""

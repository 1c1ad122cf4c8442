class BadfdError(Exception):
    """Base class for controller-side failures. Hooks never raise these."""


class ConfigError(BadfdError):
    pass


class PrerequisiteError(BadfdError):
    pass


class ChannelClosed(BadfdError):
    """Raised by a reader once the event channel has been closed."""

# gamepulse/exceptions.py


class GamePulseError(Exception):
    """Base class for errors raised by the pipeline."""


class PayloadError(GamePulseError, ValueError):
    """An event payload does not carry what its event type requires."""

    def __init__(self, event_type: str, message: str):
        self.event_type = event_type
        super().__init__(f"{event_type}: {message}")


class QueryUnavailableError(GamePulseError):
    """A serving query kept failing after its one retry."""


class UnknownViewError(GamePulseError, LookupError):
    def __init__(self, view: str):
        self.view = view
        super().__init__(f"unknown view: {view}")


class FilterError(GamePulseError, ValueError):
    """Serving filters are individually valid but not together (e.g. window too wide)."""

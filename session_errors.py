"""Error taxonomy for the realtime session engine.

Only transport errors feed the reconnect path. Device and tool errors are
caught at the component boundary and surfaced as UI events.
"""


class SessionError(Exception):
    """Base class for all session engine errors."""


class DeviceUnavailable(SessionError):
    """Capture or playback device could not be acquired."""


class TransportOpenFailed(SessionError):
    """The realtime endpoint could not be reached or rejected the setup."""


class TransportClosedUnexpectedly(SessionError):
    """The transport closed with an error while the session was live."""

    def __init__(self, message, code=None):
        super().__init__(message)
        self.code = code


class ToolExecutionFailed(SessionError):
    """A tool's side-effecting work failed."""


class CameraFrameUnavailable(SessionError):
    """No camera frame has been cached yet."""


class UnknownTool(SessionError):
    """The remote side asked for a tool that is not registered."""

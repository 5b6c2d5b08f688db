"""Custom exceptions for the scale link library."""


class ScaleError(Exception):
    """Base exception for all scale library errors."""

    pass


class LinkError(ScaleError):
    """Raised when a channel cannot be opened with a given link configuration."""

    pass


class ChannelLost(ScaleError):
    """Raised on end-of-stream or a read/write failure on an open channel."""

    pass


class ChannelNotOpen(ChannelLost):
    """Raised when I/O is attempted on a channel that is not open."""

    pass

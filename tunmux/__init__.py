"""Stream multiplexing over one connection, with flow control, port sharing and rate limiting."""

__version__ = "0.26.17"
"""Near-real-time workflow progress delivery over SSE with a polling fallback."""

__version__ = "0.1.0"

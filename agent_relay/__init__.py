"""Chat-to-agent relay: per-channel agent sessions driven over a shell."""

__version__ = "0.1.0"

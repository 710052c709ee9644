"""stream-rtc: signaling coordinator for direct peer media sessions."""

__version__ = "0.1.0"

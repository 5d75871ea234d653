"""Two-party WebRTC signaling relay and peer orchestration."""

__version__ = "0.1.0"

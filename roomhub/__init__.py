"""roomhub: a room-based group chat hub over Reticulum."""

__version__ = "0.1.0"

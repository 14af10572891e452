"""polychat: multi-provider AI chat client with resumable sessions."""

__version__ = "0.1.0"

"""Virtual-user load generation for pub/sub chat servers over WebSocket."""

__version__ = "0.1.0"

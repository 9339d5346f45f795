"""SkyGuard — role-based alert broadcast and weather monitoring service."""

__version__ = "1.0.0"

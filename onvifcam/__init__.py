"""ONVIF camera discovery, authentication and event subscription engine."""

__version__ = "0.1.0"

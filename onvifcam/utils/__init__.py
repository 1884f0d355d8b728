"""Utility functions for onvifcam."""

from onvifcam.utils.timezone import (
    ensure_utc,
    parse_xsd_datetime,
    to_utc_isoformat,
    utc_now,
    wss_created,
)

__all__ = ["utc_now", "ensure_utc", "to_utc_isoformat", "wss_created", "parse_xsd_datetime"]

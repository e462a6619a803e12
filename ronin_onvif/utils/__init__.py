"""Utility functions for ronin-onvif."""

from ronin_onvif.utils.payload import get_field, get_text, to_datetime
from ronin_onvif.utils.timezone import ensure_utc, format_gmt_offset, parse_duration, utc_now

__all__ = [
    "utc_now",
    "ensure_utc",
    "format_gmt_offset",
    "parse_duration",
    "get_field",
    "get_text",
    "to_datetime",
]

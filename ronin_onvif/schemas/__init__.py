"""Pydantic schemas for values returned by device sessions."""

from ronin_onvif.schemas.onvif import DeviceInfo, MediaProfile

__all__ = ["DeviceInfo", "MediaProfile"]

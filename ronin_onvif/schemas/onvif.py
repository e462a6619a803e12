"""Pydantic schemas for ONVIF device information."""

from typing import Any, Mapping, Optional

from pydantic import BaseModel, Field


class DeviceInfo(BaseModel):
    """Camera device information from GetDeviceInformation."""

    manufacturer: Optional[str] = None
    model: Optional[str] = None
    firmware: Optional[str] = None
    serial: Optional[str] = None
    hardware_id: Optional[str] = None

    @classmethod
    def from_response(cls, response: Mapping[str, Any]) -> "DeviceInfo":
        return cls(
            manufacturer=response.get("Manufacturer"),
            model=response.get("Model"),
            firmware=response.get("FirmwareVersion"),
            serial=response.get("SerialNumber"),
            hardware_id=response.get("HardwareId"),
        )


class MediaProfile(BaseModel):
    """A single media profile advertised by the Media service."""

    token: str = Field(..., description="Profile token identifier")
    name: str = Field(..., description="Human-readable profile name")

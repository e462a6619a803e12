"""Helpers for reading decoded SOAP response payloads.

Responses arrive either as plain dicts (``zeep.helpers.serialize_object``
output) or as zeep objects; both are read through ``get_field``.
"""

from datetime import datetime
from typing import Any, Mapping, Optional

from ronin_onvif.utils.timezone import ensure_utc


def get_field(obj: Any, name: str, default: Any = None) -> Any:
    """Read a field from a mapping or an object attribute."""
    if obj is None:
        return default
    if isinstance(obj, Mapping):
        return obj.get(name, default)
    return getattr(obj, name, default)


def get_text(obj: Any) -> Optional[str]:
    """Return the text of a simple-content value.

    Simple-content types with attributes (wsa:Address, wsnt:Topic) decode
    to ``{"_value_1": text, ...}``; plain strings are returned as is.
    """
    if obj is None:
        return None
    if isinstance(obj, str):
        return obj
    value = get_field(obj, "_value_1")
    if value is None:
        return None
    if isinstance(value, (list, tuple)):
        return "".join(str(v) for v in value)
    return str(value)


def to_datetime(value: Any) -> Optional[datetime]:
    """Convert an xsd:dateTime (string or datetime) to an aware UTC datetime."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    text = str(value).strip()
    if not text:
        return None
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        return ensure_utc(datetime.fromisoformat(text))
    except ValueError:
        pass
    # Older interpreters only accept 3 or 6 fractional digits
    if "." in text:
        head, _, tail = text.partition(".")
        zone = tail.lstrip("0123456789")
        digits = tail[: len(tail) - len(zone)]
        try:
            return ensure_utc(datetime.fromisoformat(f"{head}.{digits[:6]:0<6}{zone}"))
        except ValueError:
            return None
    return None

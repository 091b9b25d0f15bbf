"""
QR payload codec.

App-issued QR codes come in two shapes: a JSON object carrying a ``type``
discriminator (optionally wrapped in an app-link envelope), or a custom URI with
the same fields as query parameters. Anything else is somebody else's QR code
and is ignored without a round trip to the store.
"""

from __future__ import annotations

import json
import logging
from datetime import date, datetime
from typing import Any, ClassVar, Dict, Mapping, Optional, Union
from urllib.parse import parse_qs, urlencode, urlsplit

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel


logger = logging.getLogger(__name__)

BOOKING_ENTRY = "venue-entry"
MEMBER_CREDENTIAL = "eddys_member"

SCHEME_PREFIXES = ("oneeddy://scan", "vipclub://scan")
APP_LINK_PREFIX = "vipclub://scan"


class _ScanPayload(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True, extra="ignore")

    TYPE: ClassVar[str]

    venue_id: Optional[str] = None
    issued_at: Optional[datetime] = Field(default=None, alias="timestamp")

    @field_validator("*", mode="before")
    @classmethod
    def _strip_text(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = value.strip()
        return value


class BookingEntry(_ScanPayload):
    TYPE: ClassVar[str] = BOOKING_ENTRY

    booking_id: str = Field(min_length=1)
    security_code: str = Field(min_length=1)
    booking_date: Optional[date] = None
    table_number: Optional[str] = None
    start_time: Optional[str] = None
    guest_count: Optional[int] = None

    @field_validator("booking_date", mode="before")
    @classmethod
    def _date_only(cls, value: Any) -> Any:
        # "2025-01-21T19:00:00+01:00" is the 21st regardless of offset
        if isinstance(value, datetime):
            return value.date()
        if isinstance(value, str) and len(value) > 10:
            return value[:10]
        return value

    @field_validator("table_number", mode="before")
    @classmethod
    def _table_as_text(cls, value: Any) -> Any:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        return value


class MemberCredential(_ScanPayload):
    TYPE: ClassVar[str] = MEMBER_CREDENTIAL

    member_id: str = Field(min_length=1)
    security_code: str = ""
    member_tier: Optional[str] = None
    member_since: Optional[str] = None


ScanPayload = Union[BookingEntry, MemberCredential]

PAYLOAD_TYPES: Dict[str, type] = {
    BOOKING_ENTRY: BookingEntry,
    MEMBER_CREDENTIAL: MemberCredential,
}


def decode(raw: Optional[str]) -> Optional[ScanPayload]:
    """Parse scanned text into a typed payload; ``None`` means "not ours"."""
    if raw is None:
        return None
    text = raw.strip()
    if not text:
        return None
    if text.startswith("{"):
        return _decode_object(text)
    if text.startswith(SCHEME_PREFIXES):
        return _decode_uri(text)
    logger.debug("ignoring non-app QR content (%d chars)", len(text))
    return None


def encode(payload: ScanPayload) -> str:
    """Canonical QR text for a payload: compact JSON with camelCase keys."""
    return json.dumps(_wire_fields(payload), separators=(",", ":"))


def encode_uri(payload: ScanPayload, scheme: str = "oneeddy") -> str:
    prefix = f"{scheme}://scan"
    if prefix not in SCHEME_PREFIXES:
        raise ValueError(f"Unsupported scheme: {scheme}")
    fields = {key: str(value) for key, value in _wire_fields(payload).items()}
    return f"{prefix}?{urlencode(fields)}"


def scan_key(payload: ScanPayload) -> str:
    """Deterministic de-duplication key for the scan guard."""
    if isinstance(payload, BookingEntry):
        return f"booking:{payload.booking_id}:{payload.security_code}"
    return f"member:{payload.member_id}"


def _wire_fields(payload: ScanPayload) -> Dict[str, Any]:
    fields: Dict[str, Any] = {"type": payload.TYPE}
    fields.update(payload.model_dump(by_alias=True, exclude_none=True, mode="json"))
    return fields


def _decode_object(text: str) -> Optional[ScanPayload]:
    try:
        data = json.loads(text)
    except (ValueError, RecursionError):
        logger.debug("QR content looks like JSON but does not parse")
        return None
    if not isinstance(data, dict):
        return None
    url = data.get("url")
    if isinstance(url, str) and url.startswith(APP_LINK_PREFIX):
        # App-link envelope; the web flow reads the embedded fallback object
        data = data.get("fallback")
        if not isinstance(data, dict):
            return None
    return _from_mapping(data)


def _decode_uri(text: str) -> Optional[ScanPayload]:
    try:
        query = urlsplit(text).query
    except ValueError:
        return None
    params = {key: values[-1] for key, values in parse_qs(query, keep_blank_values=True).items()}
    return _from_mapping(params)


def _from_mapping(data: Mapping[str, Any]) -> Optional[ScanPayload]:
    kind = data.get("type")
    model = PAYLOAD_TYPES.get(kind) if isinstance(kind, str) else None
    if model is None:
        logger.debug("unrecognized QR payload type: %r", kind)
        return None
    try:
        return model.model_validate({k: v for k, v in data.items() if k != "type"})
    except ValidationError as exc:
        logger.debug("QR payload of type %s failed validation: %s", model.TYPE, exc.errors())
        return None

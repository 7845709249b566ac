# elevate/ingest/contract.py
"""
Kajabi Ingest Contract

Canonical shape of an inbound Kajabi tag event and the normalization rules
every other component relies on.

The "Law":
    1. EVENT IDEMPOTENCY: Same (event_id, normalized tag) = same EventRecord
    2. GRANT IDEMPOTENCY: Same (user_id, normalized tag) = same TagGrant
    3. LEDGER TRACEABILITY: every ledger entry carries
       external_event_id = "kajabi:{event_id}|tag:{tag_norm}"

Usage:
    from elevate.ingest.contract import parse_event

    event = parse_event(raw_body)
    event.tag_norm            # "elevate-ai-1-completed"
    event.external_event_id   # "kajabi:evt1|tag:elevate-ai-1-completed"
"""

from __future__ import annotations

import json
import re
import unicodedata
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, StrictInt, StrictStr, field_validator
from pydantic import ValidationError as PydanticValidationError

from ..core.errors import ErrorDetail, ValidationFailure

# =============================================================================
# Constants
# =============================================================================

EXTERNAL_SOURCE = "kajabi"
ACTIVITY_CODE = "LEARN"
LEDGER_SOURCE = "WEBHOOK"


class EventStatus(str, Enum):
    """Lifecycle of a kajabi_events row."""

    PROCESSED = "processed"
    IGNORED = "ignored"
    QUEUED_UNMATCHED = "queued_unmatched"


class StatusReason(str, Enum):
    """Why a row carries its status."""

    UNRECOGNIZED_TAG = "unrecognized_tag"
    INELIGIBLE_USER_TYPE = "ineligible_user_type"
    UNMATCHED_CONTACT = "unmatched_contact"
    ALREADY_GRANTED = "already_granted"


# =============================================================================
# Normalization
# =============================================================================

# Whitespace, underscore, dash variants, dot and slash all act as word separators
_SEPARATOR_RE = re.compile(r"[\s_\-\u2010-\u2015\u2212./]+")
_DROP_RE = re.compile(r"[^\w-]")
_DASH_RUN_RE = re.compile(r"-{2,}")


def normalize_tag(raw: Optional[str]) -> str:
    """
    Normalize a free-text Kajabi tag into its canonical identifier.

    "Elevate-AI-1-Completed", " elevate ai 1 completed " and
    "ELEVATE_AI_1 / COMPLETED" all become "elevate-ai-1-completed".
    Returns "" when nothing identifying is left.
    """
    if not raw:
        return ""
    value = unicodedata.normalize("NFKC", raw).casefold().strip()
    value = _SEPARATOR_RE.sub("-", value)
    value = _DROP_RE.sub("", value)
    value = _DASH_RUN_RE.sub("-", value)
    return value.strip("-")


def normalize_email(email: Optional[str]) -> Optional[str]:
    """Normalize an email: lowercase, strip."""
    if not email:
        return None
    cleaned = email.lower().strip()
    return cleaned if cleaned else None


def make_external_event_id(event_id: str, tag_norm: str) -> str:
    """Ledger linkage key for one (event, tag) pair."""
    return f"{EXTERNAL_SOURCE}:{event_id}|tag:{tag_norm}"


# =============================================================================
# Payload Models
# =============================================================================


class KajabiContact(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: Union[StrictInt, StrictStr]
    email: Optional[StrictStr] = None

    @field_validator("id")
    @classmethod
    def _id_as_string(cls, v: Union[int, str]) -> str:
        value = str(v).strip()
        if not value:
            raise ValueError("contact id must not be empty")
        return value


class KajabiTag(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: StrictStr

    @field_validator("name")
    @classmethod
    def _name_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("tag name must not be empty")
        return v


class KajabiTagEvent(BaseModel):
    """Body of POST /webhook as Kajabi sends it."""

    model_config = ConfigDict(extra="ignore")

    event_id: StrictStr
    created_at: datetime
    contact: KajabiContact
    tag: KajabiTag

    @field_validator("event_id")
    @classmethod
    def _event_id_not_blank(cls, v: str) -> str:
        value = v.strip()
        if not value:
            raise ValueError("event_id must not be empty")
        return value

    @field_validator("created_at", mode="before")
    @classmethod
    def _created_at_is_iso_string(cls, v: Any) -> Any:
        if not isinstance(v, str):
            raise ValueError("created_at must be an ISO-8601 string")
        return v

    @field_validator("created_at")
    @classmethod
    def _created_at_utc(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v.astimezone(timezone.utc)


# =============================================================================
# InboundEvent
# =============================================================================


@dataclass(frozen=True)
class InboundEvent:
    """A parsed, normalized Kajabi tag event."""

    event_id: str
    created_at: datetime
    contact_id: str
    contact_email: Optional[str]
    raw_tag_name: str
    tag_norm: str

    @property
    def external_event_id(self) -> str:
        return make_external_event_id(self.event_id, self.tag_norm)


def _details_from_pydantic(exc: PydanticValidationError) -> list[ErrorDetail]:
    details = []
    for error in exc.errors():
        loc = error.get("loc", ())
        details.append(
            ErrorDetail(
                field=".".join(str(x) for x in loc) if loc else None,
                message=error.get("msg", "Validation error"),
                code=error.get("type", "validation"),
            )
        )
    return details


def parse_event(body: bytes) -> InboundEvent:
    """
    Parse raw webhook bytes into an InboundEvent.

    Raises:
        ValidationFailure: body is not JSON, misses a required field, has a
            field of the wrong type, or the tag normalizes to nothing.
    """
    try:
        data = json.loads(body)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ValidationFailure(f"Request body is not valid JSON: {e}") from None

    if not isinstance(data, dict):
        raise ValidationFailure("Request body must be a JSON object")

    try:
        payload = KajabiTagEvent.model_validate(data)
    except PydanticValidationError as e:
        raise ValidationFailure(
            "Webhook payload validation failed",
            details=_details_from_pydantic(e),
        ) from None

    tag_norm = normalize_tag(payload.tag.name)
    if not tag_norm:
        raise ValidationFailure(
            "Tag name has no identifying characters",
            details=[
                ErrorDetail(
                    field="tag.name",
                    message="tag name normalizes to an empty identifier",
                    code="empty_tag",
                )
            ],
        )

    return InboundEvent(
        event_id=payload.event_id,
        created_at=payload.created_at,
        contact_id=payload.contact.id,
        contact_email=normalize_email(payload.contact.email),
        raw_tag_name=payload.tag.name,
        tag_norm=tag_norm,
    )

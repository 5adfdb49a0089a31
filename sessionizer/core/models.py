# ==============================================================================
# Sessionizer Domain Models
# ==============================================================================
"""
Pydantic models for clickstream events and session rollups.

These models are used for:
- Validating decoded Kafka message payloads
- Shaping rows for the events and sessions tables
- Type safety throughout the pipeline

This module is part of the core domain layer and has no external dependencies
beyond Pydantic.
"""

from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator

# Revenue is stored as NUMERIC(12, 2)
REVENUE_LIMIT = Decimal("1e10")
REVENUE_QUANTUM = Decimal("0.01")

TEXT_FIELDS = ("event_id", "user_id", "session_id", "event_name", "url", "referrer", "user_agent")


class EventType(str, Enum):
    """Event names that drive session aggregation."""

    PAGE_VIEW = "page_view"
    ADD_TO_CART = "add_to_cart"
    CHECKOUT = "checkout"


def parse_timestamp(value: str) -> datetime:
    """
    Parse an ISO-8601 timestamp into an aware UTC datetime.

    A trailing "Z" is accepted and naive timestamps are taken to be UTC.

    Raises:
        ValueError: If the string is not ISO-8601
    """
    text = value.strip()
    if not text:
        raise ValueError("timestamp is empty")
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None or parsed.tzinfo.utcoffset(parsed) is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def contains_nul(value: Any) -> bool:
    """True if a NUL character appears in any string (or key) of a JSON value."""
    if isinstance(value, str):
        return "\x00" in value
    if isinstance(value, dict):
        return any(contains_nul(k) or contains_nul(v) for k, v in value.items())
    if isinstance(value, list):
        return any(contains_nul(item) for item in value)
    return False


class ClickEvent(BaseModel):
    """
    A single validated user-interaction event.

    Attributes:
        event_id: Idempotency key (None only in plain-append mode)
        ts: Event time, aware UTC
        user_id: Actor identifier
        session_id: Session the event belongs to
        event_name: Categorical event name (page_view, checkout, ...)
        url: Page URL
        referrer: Referring URL
        user_agent: Client user agent
        revenue: Monetary value for monetizing events
        raw_payload: Decoded payload as received, kept for audit
    """

    model_config = {"frozen": True, "extra": "ignore"}

    event_id: str | None = Field(None, description="Idempotency key")
    ts: datetime = Field(..., description="Event timestamp (UTC)")
    user_id: str = Field(..., min_length=1, description="User identifier")
    session_id: str = Field(..., min_length=1, description="Session identifier")
    event_name: str = Field(..., min_length=1, description="Event name")
    url: str | None = Field(None, description="Page URL")
    referrer: str | None = Field(None, description="Referrer URL")
    user_agent: str | None = Field(None, description="User agent")
    revenue: Decimal | None = Field(None, allow_inf_nan=False, description="Revenue amount")
    raw_payload: dict[str, Any] | None = Field(None, description="Verbatim decoded payload")

    @field_validator("ts", mode="before")
    @classmethod
    def _ts_from_string(cls, value: Any) -> datetime:
        if not isinstance(value, str):
            raise ValueError("ts must be an ISO-8601 string")
        return parse_timestamp(value)

    @field_validator("user_id", "session_id", "event_name", mode="before")
    @classmethod
    def _strip_required(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip()
        return value

    @field_validator("event_id", mode="before")
    @classmethod
    def _event_id_text(cls, value: Any) -> Any:
        if isinstance(value, bool):
            raise ValueError("event_id must be a string")
        if isinstance(value, int):
            return str(value)
        if isinstance(value, str):
            value = value.strip()
            if not value:
                raise ValueError("event_id must not be empty")
        return value

    @field_validator(*TEXT_FIELDS, mode="before")
    @classmethod
    def _no_nul(cls, value: Any) -> Any:
        # PostgreSQL text cannot hold NUL
        if isinstance(value, str) and "\x00" in value:
            raise ValueError("must not contain NUL characters")
        return value

    @field_validator("revenue", mode="before")
    @classmethod
    def _revenue_not_bool(cls, value: Any) -> Any:
        if isinstance(value, bool):
            raise ValueError("revenue must be a number")
        return value

    @field_validator("revenue")
    @classmethod
    def _revenue_in_range(cls, value: Decimal | None) -> Decimal | None:
        if value is None:
            return value
        if abs(value) >= REVENUE_LIMIT or abs(value.quantize(REVENUE_QUANTUM)) >= REVENUE_LIMIT:
            raise ValueError(f"revenue must be below {REVENUE_LIMIT:,.0f} in magnitude")
        return value

    @field_validator("raw_payload")
    @classmethod
    def _payload_no_nul(cls, value: dict[str, Any] | None) -> dict[str, Any] | None:
        # jsonb rejects \u0000 anywhere in the document
        if value is not None and contains_nul(value):
            raise ValueError("must not contain NUL characters")
        return value

    @property
    def is_page_view(self) -> bool:
        return self.event_name == EventType.PAGE_VIEW.value

    @property
    def is_conversion(self) -> bool:
        return self.event_name == EventType.CHECKOUT.value

    def to_db_record(self) -> dict:
        """Convert event to events-table record format."""
        return {
            "event_id": self.event_id,
            "ts": self.ts,
            "user_id": self.user_id,
            "session_id": self.session_id,
            "event_name": self.event_name,
            "url": self.url,
            "referrer": self.referrer,
            "user_agent": self.user_agent,
            "revenue": self.revenue,
            "raw_payload": self.raw_payload,
        }


class SessionRollup(BaseModel):
    """
    Materialized per-session aggregate.

    Every aggregate field is a pure function of the events stored for
    session_id; last_updated_at is the wall-clock time of the last upsert.
    """

    session_id: str = Field(..., description="Session identifier")
    user_id: str = Field(..., description="User identifier")
    session_start: datetime = Field(..., description="Earliest event time")
    session_end: datetime = Field(..., description="Latest event time")
    event_count: int = Field(..., ge=0, description="Events in session")
    pageviews: int = Field(..., ge=0, description="page_view events")
    conversions: int = Field(..., ge=0, description="checkout events")
    revenue_total: Decimal = Field(default=Decimal("0"), description="Sum of revenue")
    last_updated_at: datetime | None = Field(None, description="Time of last upsert")

    @model_validator(mode="after")
    def _check_invariants(self) -> "SessionRollup":
        if self.session_start > self.session_end:
            raise ValueError("session_start must not be after session_end")
        if self.pageviews > self.event_count or self.conversions > self.event_count:
            raise ValueError("pageviews and conversions cannot exceed event_count")
        return self

    @property
    def duration_seconds(self) -> int:
        """Session duration in seconds."""
        return int((self.session_end - self.session_start).total_seconds())

    def aggregate_fields(self) -> dict:
        """Aggregate columns only, for comparing two rollups of the same session."""
        return self.model_dump(exclude={"last_updated_at"})

    @classmethod
    def from_db_row(cls, row: dict) -> "SessionRollup":
        """Build a rollup from a sessions-table row."""
        return cls(**{name: row[name] for name in cls.model_fields if name in row})

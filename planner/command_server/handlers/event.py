"""
Event handler (calendar schedule blocks).

Callers send a start/end instant pair; the handler stores the derived
calendar fields (specific_date, start_time, end_time, day_of_week) computed
in the owner's timezone.

Known limitation: when the owner has no stored timezone the configured
default (UTC unless DEFAULT_TIMEZONE says otherwise) is used, so an evening
event can land on the next calendar day for owners west of UTC.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timezone, tzinfo
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from ..commands import AuditSource
from ..errors import InvalidPayloadError
from ..store.entity_store import EntityStore
from .base import PolicyHandler
from .policy import EntityPolicy

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EventSchedule:
    """Calendar fields derived from an instant pair.

    Attributes:
        date: ISO date of the start, in the owner's timezone
        start_time: HH:MM:SS
        end_time: HH:MM:SS
        weekday: 0=Sunday .. 6=Saturday
    """

    date: str
    start_time: str
    end_time: str
    weekday: int

    def as_fields(self) -> dict[str, Any]:
        return {
            "specific_date": self.date,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "day_of_week": self.weekday,
        }


def parse_instant(value: Any, field_name: str = "start") -> datetime:
    """Parse an ISO-8601 instant. Naive values are taken as UTC.

    Raises:
        InvalidPayloadError: If the value is not an ISO-8601 timestamp
    """
    if isinstance(value, datetime):
        instant = value
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        if text[-1] in "zZ":
            text = text[:-1] + "+00:00"
        try:
            instant = datetime.fromisoformat(text)
        except ValueError:
            raise InvalidPayloadError(
                f"{field_name} must be an ISO-8601 timestamp", field_name=field_name
            ) from None
    else:
        raise InvalidPayloadError(f"{field_name} is required", field_name=field_name)

    if instant.tzinfo is None:
        instant = instant.replace(tzinfo=timezone.utc)
    return instant


def resolve_timezone(name: str | None) -> tzinfo:
    """Resolve an IANA name; unknown or empty names resolve to UTC."""
    if not name or name.upper() == "UTC":
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone, using UTC", extra={"timezone": name})
        return timezone.utc


def derive_schedule(start: datetime, end: datetime, tz: tzinfo) -> EventSchedule:
    """Derive calendar fields from a start/end pair, as seen in ``tz``.

    Args:
        start: Start instant (aware)
        end: End instant (aware)
        tz: Owner timezone

    Returns:
        EventSchedule

    Raises:
        InvalidPayloadError: If end precedes start
    """
    if end < start:
        raise InvalidPayloadError("end must not precede start", field_name="end")

    local_start = start.astimezone(tz)
    local_end = end.astimezone(tz)
    return EventSchedule(
        date=local_start.date().isoformat(),
        start_time=local_start.strftime("%H:%M:%S"),
        end_time=local_end.strftime("%H:%M:%S"),
        weekday=local_start.isoweekday() % 7,
    )


def _instant_param(payload: dict[str, Any], name: str) -> Any:
    value = payload.get(name)
    if value is None:
        value = payload.get(f"{name}_iso")
    return value


class EventHandler(PolicyHandler):
    """Schedule blocks; logically deleted."""

    defaults = {"is_recurring": False}
    required = ("title",)

    def __init__(self, store: EntityStore, policy: EntityPolicy, default_timezone: str = "UTC") -> None:
        super().__init__(store, policy)
        self.default_timezone = default_timezone

    async def owner_timezone(self, owner_id: str) -> tzinfo:
        stored = await self.store.get_owner_timezone(owner_id)
        return resolve_timezone(stored or self.default_timezone)

    async def prepare_create(
        self,
        owner_id: str,
        payload: dict[str, Any],
        data: dict[str, Any],
        source: AuditSource,
    ) -> dict[str, Any]:
        start = parse_instant(_instant_param(payload, "start"), "start")
        end = parse_instant(_instant_param(payload, "end"), "end")
        schedule = derive_schedule(start, end, await self.owner_timezone(owner_id))

        data.update(schedule.as_fields())
        if data.get("description") is None:
            data["description"] = payload.get("notes")
        data.setdefault("location", None)
        data.setdefault("course_id", None)
        data["source"] = source.value
        return data

    async def prepare_update(
        self,
        owner_id: str,
        before: dict[str, Any],
        payload: dict[str, Any],
        patch: dict[str, Any],
    ) -> dict[str, Any]:
        if "notes" in payload and "description" not in payload:
            patch["description"] = payload["notes"]

        raw_start = _instant_param(payload, "start")
        raw_end = _instant_param(payload, "end")
        if raw_start is None and raw_end is None:
            return patch

        tz = await self.owner_timezone(owner_id)
        start = parse_instant(raw_start, "start") if raw_start is not None else None
        end = parse_instant(raw_end, "end") if raw_end is not None else None
        if start is None:
            start = self._stored_instant(before, "start_time", tz) or end
        if end is None:
            # Moving the start keeps the stored end time on the new day
            new_day = start.astimezone(tz).date()
            end = self._stored_instant(before, "end_time", tz, on=new_day) or start

        schedule = derive_schedule(start, end, tz)
        if raw_start is not None:
            patch["specific_date"] = schedule.date
            patch["start_time"] = schedule.start_time
            patch["day_of_week"] = schedule.weekday
        if raw_end is not None:
            patch["end_time"] = schedule.end_time
        return patch

    @staticmethod
    def _stored_instant(
        row: dict[str, Any],
        time_field: str,
        tz: tzinfo,
        on: date | None = None,
    ) -> datetime | None:
        """Rebuild an instant from a stored time, on ``on`` or the stored date."""
        if not row.get(time_field):
            return None
        if on is None:
            if not row.get("specific_date"):
                return None
            on = date.fromisoformat(row["specific_date"])
        return datetime.combine(on, time.fromisoformat(row[time_field]), tzinfo=tz)

"""iCalendar codec for remote calendar objects.

Converts the text of a remote calendar object into a canonical
``CalendarEvent`` and back, using the ``icalendar`` parser.  Only ``UID`` and
``SEQUENCE`` carry sync semantics; the remaining fields are payload.
"""

from __future__ import annotations

from datetime import UTC, date, datetime, time
from typing import Any

from icalendar import Calendar, Event, vCalAddress, vRecur

from calsync.errors import MalformedRemoteItemError
from calsync.models import CalendarEvent, SyncStatus

PRODID = "-//calsync//calsync//EN"

_RESOURCE_CUTYPES = {"RESOURCE", "ROOM"}


def _parse(raw: str, *, href: str | None = None) -> Calendar:
    try:
        return Calendar.from_ical(raw)
    except (ValueError, IndexError) as exc:
        raise MalformedRemoteItemError(f"Unparseable calendar data: {exc}", href=href) from exc


def _first_vevent(calendar: Calendar, *, href: str | None = None) -> Event:
    events = calendar.walk("VEVENT")
    if not events:
        raise MalformedRemoteItemError("Calendar object has no VEVENT", href=href)
    # Overrides of a recurring series share the master's UID; the master is the
    # one without RECURRENCE-ID.
    for component in events:
        if component.get("recurrence-id") is None:
            return component
    return events[0]


def extract_uid(raw: str | None) -> str | None:
    """Return the UID of the first VEVENT in *raw*, or None when unavailable."""
    if not raw:
        return None
    try:
        component = _first_vevent(_parse(raw))
    except MalformedRemoteItemError:
        return None
    return _text(component, "uid")


def extract_sequence(raw: str | None) -> int | None:
    """Return the SEQUENCE of the first VEVENT in *raw*.

    Returns None when *raw* is empty, unparseable or carries no SEQUENCE, so
    callers can fall back to their own default.
    """
    if not raw:
        return None
    try:
        component = _first_vevent(_parse(raw))
    except MalformedRemoteItemError:
        return None
    if component.get("sequence") is None:
        return None
    try:
        value = int(component.decoded("sequence"))
    except (TypeError, ValueError):
        return None
    return max(value, 0)


def _as_datetime(value: Any) -> tuple[datetime | None, bool]:
    """Normalize a decoded DTSTART/DTEND into (aware datetime, is_all_day)."""
    if value is None:
        return None, False
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return value, False
    if isinstance(value, date):
        return datetime.combine(value, time.min, tzinfo=UTC), True
    return None, False


def _decoded(component: Event, name: str) -> Any:
    if component.get(name) is None:
        return None
    try:
        return component.decoded(name)
    except (KeyError, ValueError):
        return None


def _text(component: Event, name: str) -> str | None:
    value = component.get(name)
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _as_list(value: Any) -> list[Any]:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def _address_entry(address: Any) -> dict[str, Any]:
    email = str(address)
    if email.lower().startswith("mailto:"):
        email = email[len("mailto:") :]
    params = getattr(address, "params", {}) or {}
    entry: dict[str, Any] = {"email": email}
    for key, param in (
        ("name", "CN"),
        ("role", "ROLE"),
        ("status", "PARTSTAT"),
        ("type", "CUTYPE"),
    ):
        if params.get(param):
            entry[key] = str(params[param])
    return entry


def decode_event(
    raw: str,
    *,
    calendar_id: int,
    href: str | None = None,
    revision_tag: str | None = None,
) -> CalendarEvent:
    """Decode one remote calendar object into a synced ``CalendarEvent``.

    Raises
    ------
    MalformedRemoteItemError
        If *raw* cannot be parsed, has no VEVENT, the VEVENT has no UID or more
        than one RRULE, or any field fails to decode.
    """
    try:
        return _decode_event(raw, calendar_id=calendar_id, href=href, revision_tag=revision_tag)
    except MalformedRemoteItemError:
        raise
    except Exception as exc:
        raise MalformedRemoteItemError(f"Undecodable calendar object: {exc!r}", href=href) from exc


def _decode_event(
    raw: str,
    *,
    calendar_id: int,
    href: str | None,
    revision_tag: str | None,
) -> CalendarEvent:
    component = _first_vevent(_parse(raw, href=href), href=href)
    uid = _text(component, "uid")
    if uid is None:
        raise MalformedRemoteItemError("VEVENT has no UID", href=href)

    start, all_day = _as_datetime(_decoded(component, "dtstart"))
    end, _ = _as_datetime(_decoded(component, "dtend"))

    rrules = _as_list(component.get("rrule"))
    if len(rrules) > 1:
        raise MalformedRemoteItemError(f"VEVENT {uid} has {len(rrules)} RRULEs", href=href)
    recurrence_rule = rrules[0].to_ical().decode() if rrules else None

    attendees: list[dict[str, Any]] = []
    resources: list[dict[str, Any]] = []
    for address in _as_list(component.get("attendee")):
        entry = _address_entry(address)
        if entry.get("type", "").upper() in _RESOURCE_CUTYPES:
            resources.append(entry)
        else:
            attendees.append(entry)

    return CalendarEvent(
        uid=uid,
        calendar_id=calendar_id,
        sequence=extract_sequence(raw) or 0,
        revision_tag=revision_tag,
        href=href,
        sync_status=SyncStatus.SYNCED,
        title=_text(component, "summary") or "Untitled Event",
        description=_text(component, "description"),
        location=_text(component, "location"),
        start=start,
        end=end,
        all_day=all_day,
        recurrence_rule=recurrence_rule,
        attendees=attendees,
        resources=resources,
        raw_data=raw,
    )


def _calendar_address(entry: dict[str, Any], *, cutype: str | None = None) -> vCalAddress:
    address = vCalAddress(f"mailto:{entry['email']}")
    if entry.get("name"):
        address.params["CN"] = entry["name"]
    if entry.get("role"):
        address.params["ROLE"] = entry["role"]
    if entry.get("status"):
        address.params["PARTSTAT"] = entry["status"]
    kind = cutype or entry.get("type")
    if kind:
        address.params["CUTYPE"] = kind
    return address


def serialize_event(event: CalendarEvent) -> str:
    """Render *event* as an iCalendar object carrying its UID and SEQUENCE."""
    calendar = Calendar()
    calendar.add("prodid", PRODID)
    calendar.add("version", "2.0")

    component = Event()
    component.add("uid", event.uid)
    component.add("sequence", event.sequence)
    component.add("dtstamp", datetime.now(UTC))
    component.add("summary", event.title)
    if event.start is not None:
        component.add("dtstart", event.start.date() if event.all_day else event.start)
    if event.end is not None:
        component.add("dtend", event.end.date() if event.all_day else event.end)
    if event.description:
        component.add("description", event.description)
    if event.location:
        component.add("location", event.location)
    if event.recurrence_rule:
        component.add("rrule", vRecur.from_ical(event.recurrence_rule))
    for entry in event.attendees:
        if entry.get("email"):
            component.add("attendee", _calendar_address(entry))
    for entry in event.resources:
        if entry.get("email"):
            kind = entry.get("type") or "RESOURCE"
            component.add("attendee", _calendar_address(entry, cutype=kind))

    calendar.add_component(component)
    return calendar.to_ical().decode()

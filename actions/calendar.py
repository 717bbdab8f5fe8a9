"""
Calendar actions — free-slot lookup and appointment booking against
Google Calendar's REST API.

Slot offering works on the tenant's local clock: the next three days,
hourly slots from 09:00 to 17:00, skipping anything already past or
overlapping a busy range, at most three slots. Each offered slot yields two
session variables:

    slot_<n>        display text used in button titles ("Mon 18 10:00")
    SLOT_<n>_ISO    the slot start as ISO-8601 with offset, read back by
                    schedule_appointment once the user picks SLOT_<n>

Every lookup rewrites all three pairs; slots a lookup did not offer get an
empty ISO value.
"""
from __future__ import annotations

import asyncio
import json
import structlog
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Optional
from urllib.parse import quote
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from actions.registry import ActionError, ActionName
from config.settings import CalendarConfig
from flows.loader import tenant_dir
from models.schemas import Session

logger = structlog.get_logger()

CALENDAR_FILENAME = "calendar.json"


class CalendarUnavailable(Exception):
    """Calendar not configured for the tenant, or the API call failed."""


@dataclass(frozen=True)
class Slot:
    id: str             # SLOT_1, SLOT_2, ...
    text: str           # shown to the user
    iso_value: str      # slot start, ISO-8601 with offset


# ──────────────────────────────────────────────────────────────
#  Pure slot computation
# ──────────────────────────────────────────────────────────────

def find_free_slots(
    now: datetime,
    busy: list[tuple[datetime, datetime]],
    days: int = 3,
    start_hour: int = 9,
    end_hour: int = 17,
    max_slots: int = 3,
    duration: timedelta = timedelta(hours=1),
) -> list[Slot]:
    """
    Free hourly slots starting today on `now`'s clock.

    `now` must be timezone-aware; slot times carry its tzinfo.
    """
    tz = now.tzinfo
    slots: list[Slot] = []
    for d in range(days):
        day = (now + timedelta(days=d)).date()
        for hour in range(start_hour, end_hour):
            start = datetime(day.year, day.month, day.day, hour, tzinfo=tz)
            end = start + duration
            if start < now:
                continue
            if any(start < b_end and end > b_start for b_start, b_end in busy):
                continue
            n = len(slots) + 1
            slots.append(Slot(
                id=f"SLOT_{n}",
                text=start.strftime("%a %d %H:%M"),
                iso_value=start.isoformat(timespec="seconds"),
            ))
            if len(slots) >= max_slots:
                return slots
    return slots


def _parse_rfc3339(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


# ──────────────────────────────────────────────────────────────
#  Google Calendar client
# ──────────────────────────────────────────────────────────────

class GoogleCalendarClient:
    """Thin async client for the two Calendar endpoints the actions need."""

    BASE_URL = "https://www.googleapis.com/calendar/v3"

    def __init__(
        self,
        calendar_id: str,
        access_token: str,
        tz: str = "UTC",
        http: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
    ):
        self.calendar_id = calendar_id
        self.tz = _load_zone(tz)
        self._http = http or httpx.AsyncClient(timeout=timeout)
        self._headers = {"Authorization": f"Bearer {access_token}"}

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, max=4),
        reraise=True,
    )
    async def _request(self, method: str, path: str, payload: dict) -> dict:
        response = await self._http.request(
            method, f"{self.BASE_URL}/{path}", json=payload, headers=self._headers,
        )
        response.raise_for_status()
        return response.json()

    async def get_busy(self, start: datetime, end: datetime) -> list[tuple[datetime, datetime]]:
        data = await self._request("POST", "freeBusy", {
            "timeMin": start.isoformat(),
            "timeMax": end.isoformat(),
            "items": [{"id": self.calendar_id}],
        })
        ranges = data.get("calendars", {}).get(self.calendar_id, {}).get("busy", [])
        busy = []
        for r in ranges:
            try:
                busy.append((_parse_rfc3339(r["start"]), _parse_rfc3339(r["end"])))
            except (KeyError, ValueError):
                logger.warning("calendar_busy_range_unparseable", range=r)
        return busy

    async def next_available_slots(self, lookahead: timedelta = timedelta(hours=72)) -> list[Slot]:
        now = datetime.now(self.tz)
        busy = await self.get_busy(now, now + lookahead)
        return find_free_slots(now, busy)

    async def create_appointment(
        self, iso_start: str, contact_name: str, contact_phone: str, summary_prefix: str = "Turno",
    ) -> dict:
        try:
            start = datetime.fromisoformat(iso_start)
        except ValueError as e:
            raise CalendarUnavailable(f"Invalid slot time: {iso_start!r}") from e
        end = start + timedelta(hours=1)
        return await self._request("POST", f"calendars/{quote(self.calendar_id, safe='')}/events", {
            "summary": f"{summary_prefix}: {contact_name}",
            "description": f"Booked via WhatsApp.\nPhone: {contact_phone}",
            "start": {"dateTime": start.isoformat()},
            "end": {"dateTime": end.isoformat()},
        })


def _load_zone(name: str):
    try:
        return ZoneInfo(name)
    except ZoneInfoNotFoundError:
        logger.warning("calendar_timezone_unknown", timezone=name)
        return timezone.utc


# ──────────────────────────────────────────────────────────────
#  Per-tenant client factory
# ──────────────────────────────────────────────────────────────

CalendarFactory = Callable[[str], GoogleCalendarClient]


def tenant_calendar_id(config: CalendarConfig, config_root: str | Path, tenant: str) -> str:
    """calendar_id from the tenant's calendar.json, else the configured default."""
    path = tenant_dir(config_root, tenant) / CALENDAR_FILENAME
    if not path.exists():
        return config.default_calendar_id
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
        raise CalendarUnavailable(f"Cannot read {path}: {e}") from e
    return str(raw.get("calendar_id", "")) if isinstance(raw, dict) else ""


def make_calendar_factory(
    config: CalendarConfig,
    config_root: str | Path,
    http: Optional[httpx.AsyncClient] = None,
) -> CalendarFactory:
    http = http or httpx.AsyncClient(timeout=10.0)

    def factory(tenant: str) -> GoogleCalendarClient:
        if not config.access_token:
            raise CalendarUnavailable("Calendar access token is not configured")
        calendar_id = tenant_calendar_id(config, config_root, tenant)
        if not calendar_id:
            raise CalendarUnavailable(f"No calendar_id for tenant {tenant}")
        return GoogleCalendarClient(
            calendar_id, config.access_token, tz=config.timezone, http=http,
        )
    return factory


# ──────────────────────────────────────────────────────────────
#  Action handlers
# ──────────────────────────────────────────────────────────────

OFFERED_SLOTS = 3


def _blank_slots(slot_1: str) -> dict[str, str]:
    """All slot variables blanked, with `slot_1` carrying the status text."""
    variables = {}
    for n in range(1, OFFERED_SLOTS + 1):
        variables[f"slot_{n}"] = "-"
        variables[f"SLOT_{n}_ISO"] = ""
    variables["slot_1"] = slot_1
    return variables


def make_get_calendar_slots(factory: CalendarFactory):

    async def get_calendar_slots(tenant: str, user_id: str, session: Session) -> dict[str, str]:
        try:
            calendar = await asyncio.to_thread(factory, tenant)
        except CalendarUnavailable as e:
            logger.error("calendar_init_failed", tenant=tenant, error=str(e))
            return _blank_slots("Error Config")

        try:
            slots = await calendar.next_available_slots()
        except (httpx.HTTPError, CalendarUnavailable) as e:
            logger.error("calendar_query_failed", tenant=tenant, error=str(e))
            return _blank_slots("Sin sistema")

        variables = _blank_slots("Sin cupo")
        for n, slot in enumerate(slots[:OFFERED_SLOTS], start=1):
            variables[f"slot_{n}"] = slot.text
            variables[f"{slot.id}_ISO"] = slot.iso_value
        logger.info("calendar_slots_offered", tenant=tenant, user=user_id, count=len(slots))
        return variables

    return get_calendar_slots


def make_schedule_appointment(factory: CalendarFactory, summary_prefix: str = "Turno Flowly"):

    async def schedule_appointment(tenant: str, user_id: str, session: Session) -> dict[str, str]:
        action = ActionName.SCHEDULE_APPOINTMENT.value
        selected = session.last_selected_id
        iso_start = session.data.get(f"{selected}_ISO", "") if selected else ""
        if not iso_start:
            logger.warning("appointment_slot_missing", tenant=tenant, user=user_id, selected=selected)
            raise ActionError(action, "No valid slot selected, or the selection expired")

        name = session.data.get("client_name") or session.name
        try:
            calendar = await asyncio.to_thread(factory, tenant)
            await calendar.create_appointment(iso_start, name, user_id, summary_prefix)
        except (httpx.HTTPError, CalendarUnavailable) as e:
            raise ActionError(action, f"Could not book the appointment: {e}") from e

        logger.info("appointment_booked", tenant=tenant, user=user_id, start=iso_start)
        return {"appointment_confirm_time": iso_start}

    return schedule_appointment

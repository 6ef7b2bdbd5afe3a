"""Minimal iCalendar (RFC 5545) reader for OTA availability feeds.

Only VEVENT blocks with UID, DTSTART and DTEND matter here; everything else
is skipped. Dates arrive as YYYYMMDD, YYYYMMDDTHHMMSSZ or YYYY-MM-DD and are
normalised to calendar dates before any comparison.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from datetime import date, datetime

import requests

from roomledger.domain.errors import ChannelSyncError, ValidationError

logger = logging.getLogger(__name__)

USER_AGENT = "Roomledger/1.0 iCal Sync"
FETCH_TIMEOUT = int(os.environ.get("ICAL_FETCH_TIMEOUT", "30"))

_COMPACT_DATE = re.compile(r"^(\d{4})(\d{2})(\d{2})")
_ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


@dataclass(frozen=True)
class CalendarEntry:
    uid: str
    start: date
    end: date
    summary: str = ""
    description: str = ""


def normalize_ical_date(value: str) -> date:
    """Parse the date part of an iCal DATE or DATE-TIME value.

    Raises:
        ValidationError: Unrecognised format or a day that does not exist
            (20250230).
    """
    value = value.strip()
    try:
        if _ISO_DATE.match(value):
            return date.fromisoformat(value)
        match = _COMPACT_DATE.match(value.replace("-", ""))
        if match:
            return date(int(match.group(1)), int(match.group(2)), int(match.group(3)))
        return datetime.fromisoformat(value).date()
    except ValueError:
        raise ValidationError("unrecognised calendar date", {"value": value}) from None


def _unfold(text: str) -> list[str]:
    # continuation lines start with a space or tab
    text = text.replace("\r\n", "\n")
    text = re.sub(r"\n[ \t]", "", text)
    return text.split("\n")


def parse_ical(text: str) -> list[CalendarEntry]:
    """Extract complete VEVENTs; incomplete or undatable ones are dropped."""
    entries: list[CalendarEntry] = []
    current: dict[str, str] | None = None

    for raw in _unfold(text):
        line = raw.strip()
        if line == "BEGIN:VEVENT":
            current = {}
            continue
        if line == "END:VEVENT":
            if current and current.get("UID") and current.get("DTSTART") and current.get("DTEND"):
                try:
                    entries.append(
                        CalendarEntry(
                            uid=current["UID"],
                            start=normalize_ical_date(current["DTSTART"]),
                            end=normalize_ical_date(current["DTEND"]),
                            summary=current.get("SUMMARY", ""),
                            description=current.get("DESCRIPTION", "").replace("\\n", "\n"),
                        )
                    )
                except ValidationError as e:
                    logger.warning(
                        "skipping calendar entry with bad dates",
                        extra={"extra_fields": {"uid": current["UID"], **e.details}},
                    )
            current = None
            continue
        if current is None or ":" not in line:
            continue
        key, _, value = line.partition(":")
        # DTSTART;VALUE=DATE:20250301
        key = key.split(";", 1)[0].upper()
        if key in ("UID", "SUMMARY", "DTSTART", "DTEND", "DESCRIPTION"):
            current[key] = value

    return entries


def fetch_calendar(url: str) -> str:
    """GET an iCal feed.

    Raises:
        ChannelSyncError: Network error or non-2xx response.
    """
    try:
        response = requests.get(
            url,
            headers={"Accept": "text/calendar", "User-Agent": USER_AGENT},
            timeout=FETCH_TIMEOUT,
        )
        response.raise_for_status()
    except requests.RequestException as e:
        raise ChannelSyncError("calendar feed fetch failed", {"error": str(e)}) from e
    return response.text

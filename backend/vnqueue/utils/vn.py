"""
Visit Number (VN) helpers.

Canonical form: VN<YY><MM><DD>-<4-digit sequence>, e.g. VN260112-0001.
A bare number ("1", "0001") or a prefixed number ("VN1") is completed
with today's date before it is sent to the queue service.
"""
import re
from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional
from zoneinfo import ZoneInfo

from vnqueue.core.config import settings
from vnqueue.exceptions import InvalidVisitNumberError

VN_REGEX = re.compile(r"^VN\d{6}-\d{4}$")
VN_DATE_REGEX = re.compile(r"^VN(\d{2})(\d{2})(\d{2})-(\d{4})$")
VN_NUMBER_ONLY_REGEX = re.compile(r"^\d{1,4}$")
VN_PREFIX_ONLY_REGEX = re.compile(r"^VN(\d{1,4})$")


@dataclass(frozen=True)
class VisitNumberParts:
    year: int
    month: int
    day: int
    sequence: int

    @property
    def issued_on(self) -> date:
        return date(self.year, self.month, self.day)


def today_in_hospital() -> date:
    return datetime.now(ZoneInfo(settings.VN_TIMEZONE)).date()


def vn_date_prefix(on: Optional[date] = None) -> str:
    on = on or today_in_hospital()
    return f"VN{on:%y%m%d}-"


def is_valid_vn(vn: str) -> bool:
    return bool(VN_REGEX.match(vn.strip())) and parse_vn(vn.strip()) is not None


def parse_vn(vn: str) -> Optional[VisitNumberParts]:
    match = VN_DATE_REGEX.match(vn)
    if not match:
        return None
    yy, mm, dd, seq = match.groups()
    try:
        date(2000 + int(yy), int(mm), int(dd))
    except ValueError:
        return None
    return VisitNumberParts(2000 + int(yy), int(mm), int(dd), int(seq))


def normalize_vn(raw: str, on: Optional[date] = None) -> str:
    """
    Normalize user input into a canonical VN.

    Raises:
        InvalidVisitNumberError: input is empty or matches none of the accepted forms
    """
    candidate = (raw or "").strip().upper()
    if not candidate:
        raise InvalidVisitNumberError("Please enter a visit number.")

    if VN_NUMBER_ONLY_REGEX.match(candidate):
        return f"{vn_date_prefix(on)}{candidate.zfill(4)}"

    prefixed = VN_PREFIX_ONLY_REGEX.match(candidate)
    if prefixed:
        return f"{vn_date_prefix(on)}{prefixed.group(1).zfill(4)}"

    if is_valid_vn(candidate):
        return candidate

    raise InvalidVisitNumberError()


def format_vn_display(vn: str) -> str:
    """VN260112-0001 -> 'VN 26/01/12 - 0001'"""
    parts = parse_vn(vn)
    if parts is None:
        return vn
    return f"VN {parts.year % 100:02d}/{parts.month:02d}/{parts.day:02d} - {parts.sequence:04d}"

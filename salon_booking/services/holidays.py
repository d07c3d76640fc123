from datetime import date, datetime
from functools import lru_cache
from typing import Optional

import holidays
import structlog

logger = structlog.get_logger(__name__)


class HolidayService:
    """Public-holiday lookups for branches that name a holiday calendar.

    Uses the `holidays` library; the calendar is picked by the branch's
    ISO country code (e.g. "US", "IL").
    """

    @staticmethod
    @lru_cache(maxsize=32)
    def _calendar(country: str, year: int) -> Optional[holidays.HolidayBase]:
        try:
            return holidays.country_holidays(country, years=year)
        except NotImplementedError:
            logger.warning("Unsupported holiday calendar", country=country)
            return None

    @classmethod
    def is_holiday(cls, country: Optional[str], dt) -> bool:
        if not country:
            return False
        d: date = dt.date() if isinstance(dt, datetime) else dt
        cal = cls._calendar(country.upper(), d.year)
        return cal is not None and d in cal

    @classmethod
    def get_holiday_name(cls, country: Optional[str], dt) -> Optional[str]:
        if not country:
            return None
        d: date = dt.date() if isinstance(dt, datetime) else dt
        cal = cls._calendar(country.upper(), d.year)
        return cal.get(d) if cal is not None else None

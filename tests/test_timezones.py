"""Local-day and next-midnight resolution across zones and DST transitions."""

from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from progress_backend import config
from progress_backend.errors import UnknownTimeZoneError
from progress_backend.timezones import (
    as_utc,
    from_iso,
    is_valid_time_zone,
    local_day,
    next_local_midnight,
    require_time_zone,
    resolve_day,
    resolve_zone,
    start_of_local_day,
    to_iso,
)
from tests.helpers import utc

NEW_YORK = ZoneInfo("America/New_York")
KOLKATA = ZoneInfo("Asia/Kolkata")
KATHMANDU = ZoneInfo("Asia/Kathmandu")


class TestLocalDay:
    def test_new_york_evening_is_previous_utc_day(self):
        # 23:50 EST on Jan 15 is 04:50 UTC on Jan 16.
        now = utc(2024, 1, 16, 4, 50)
        assert local_day(NEW_YORK, now) == "2024-01-15"
        assert next_local_midnight(NEW_YORK, now) == utc(2024, 1, 16, 5, 0)

    def test_half_hour_offset(self):
        # 20:00 UTC is 01:30 IST the next day.
        now = utc(2024, 3, 10, 20, 0)
        assert local_day(KOLKATA, now) == "2024-03-11"
        assert next_local_midnight(KOLKATA, now) == utc(2024, 3, 11, 18, 30)

    def test_quarter_hour_offset(self):
        now = utc(2024, 3, 10, 12, 0)
        assert local_day(KATHMANDU, now) == "2024-03-10"
        assert next_local_midnight(KATHMANDU, now) == utc(2024, 3, 10, 18, 15)

    def test_naive_instant_is_treated_as_utc(self):
        assert local_day(NEW_YORK, datetime(2024, 1, 16, 4, 50)) == "2024-01-15"

    def test_deadline_is_strictly_after_now(self):
        midnight = utc(2024, 1, 16, 5, 0)
        deadline = next_local_midnight(NEW_YORK, midnight)
        assert deadline > midnight
        assert deadline == utc(2024, 1, 17, 5, 0)


class TestDaylightSaving:
    def test_spring_forward_day_is_23_hours(self):
        now = utc(2024, 3, 10, 6, 0)  # 01:00 EST, an hour before the jump
        start = start_of_local_day(NEW_YORK, datetime(2024, 3, 10).date())
        end = next_local_midnight(NEW_YORK, now)
        assert local_day(NEW_YORK, now) == "2024-03-10"
        assert end == utc(2024, 3, 11, 4, 0)
        assert end - start == timedelta(hours=23)

    def test_fall_back_day_is_25_hours(self):
        now = utc(2024, 11, 3, 12, 0)
        start = start_of_local_day(NEW_YORK, datetime(2024, 11, 3).date())
        end = next_local_midnight(NEW_YORK, now)
        assert start == utc(2024, 11, 3, 4, 0)
        assert end == utc(2024, 11, 4, 5, 0)
        assert end - start == timedelta(hours=25)

    def test_skipped_midnight_resolves_to_first_existing_instant(self):
        # Chile jumps from 00:00 to 01:00 on 2024-09-08.
        santiago = ZoneInfo("America/Santiago")
        end = next_local_midnight(santiago, utc(2024, 9, 7, 20, 0))
        assert end == utc(2024, 9, 8, 4, 0)
        assert local_day(santiago, end) == "2024-09-08"
        assert local_day(santiago, end - timedelta(microseconds=1)) == "2024-09-07"


class TestZoneResolution:
    @pytest.mark.parametrize("name", ["America/New_York", "Asia/Kathmandu", "UTC"])
    def test_known_zones_are_valid(self, name):
        assert is_valid_time_zone(name)

    @pytest.mark.parametrize("name", [None, "", "   ", "Mars/Olympus_Mons", "EST+5"])
    def test_unknown_zones_are_invalid(self, name):
        assert not is_valid_time_zone(name)

    def test_require_time_zone_raises(self):
        with pytest.raises(UnknownTimeZoneError):
            require_time_zone("Not/AZone")

    def test_unknown_zone_falls_back_to_default(self):
        assert resolve_zone("Not/AZone").key == "UTC"
        window = resolve_day("Not/AZone", utc(2024, 1, 16, 4, 50))
        assert window.zone_name == "UTC"
        assert window.day == "2024-01-16"
        assert window.finalize_at == utc(2024, 1, 17)

    def test_missing_zone_uses_configured_default(self, monkeypatch):
        monkeypatch.setattr(config, "DEFAULT_TIME_ZONE", "Asia/Tokyo")
        assert resolve_zone(None).key == "Asia/Tokyo"
        assert resolve_zone("bogus").key == "Asia/Tokyo"

    def test_unusable_default_falls_back_to_utc(self, monkeypatch):
        monkeypatch.setattr(config, "DEFAULT_TIME_ZONE", "Nowhere/Special")
        assert resolve_zone(None).key == "UTC"


class TestIsoFormat:
    def test_to_iso_is_utc_with_fixed_precision(self):
        value = to_iso(datetime(2024, 1, 15, 23, 50, tzinfo=NEW_YORK))
        assert value == "2024-01-16T04:50:00.000000+00:00"

    def test_lexical_order_matches_time_order(self):
        earlier = utc(2024, 1, 16, 4, 50)
        later = earlier + timedelta(microseconds=1)
        assert to_iso(earlier) < to_iso(later)

    def test_as_utc_normalises_instants(self):
        assert as_utc(datetime(2024, 1, 16, 4, 50)) == utc(2024, 1, 16, 4, 50)
        converted = as_utc(datetime(2024, 1, 15, 23, 50, tzinfo=NEW_YORK))
        assert converted.tzinfo is timezone.utc
        assert converted.hour == 4
        assert as_utc().tzinfo is timezone.utc

    def test_from_iso_returns_aware_utc(self):
        parsed = from_iso("2024-01-16T05:00:00.000000+00:00")
        assert parsed == utc(2024, 1, 16, 5)
        assert parsed.utcoffset() == timezone.utc.utcoffset(None)

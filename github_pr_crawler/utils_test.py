"""Unit tests for utils module."""

from datetime import datetime, timedelta, timezone

from github_pr_crawler.utils import format_timestamp, parse_timestamp


def describe_parse_timestamp():
    def it_parses_github_z_suffix():
        assert parse_timestamp("2024-03-01T10:00:00Z") == datetime(2024, 3, 1, 10, tzinfo=timezone.utc)

    def it_converts_offsets_to_utc():
        result = parse_timestamp("2024-03-01T12:00:00+02:00")
        assert result == datetime(2024, 3, 1, 10, tzinfo=timezone.utc)
        assert result.utcoffset() == timedelta(0)

    def it_treats_naive_values_as_utc():
        assert parse_timestamp("2024-03-01T10:00:00") == datetime(2024, 3, 1, 10, tzinfo=timezone.utc)

    def it_accepts_datetimes():
        dt = datetime(2024, 3, 1, 10)
        assert parse_timestamp(dt) == datetime(2024, 3, 1, 10, tzinfo=timezone.utc)

    def it_passes_none_through():
        assert parse_timestamp(None) is None
        assert parse_timestamp("") is None


def describe_format_timestamp():
    def it_formats_as_utc_iso():
        assert format_timestamp(datetime(2024, 3, 1, 10, tzinfo=timezone.utc)) == "2024-03-01T10:00:00+00:00"

    def it_normalizes_offsets():
        tz = timezone(timedelta(hours=-5))
        assert format_timestamp(datetime(2024, 3, 1, 5, tzinfo=tz)) == "2024-03-01T10:00:00+00:00"

    def it_passes_none_through():
        assert format_timestamp(None) is None

    def it_orders_like_the_datetimes_it_formats():
        earlier = format_timestamp(parse_timestamp("2024-01-01T00:00:00Z"))
        later = format_timestamp(parse_timestamp("2024-01-01T00:00:01Z"))
        assert earlier < later

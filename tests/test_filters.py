"""Tests for the listing filter language."""

from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest

from uploadserver.exceptions import ErrorKind, UserNotFoundError
from uploadserver.filters import (
    FilterTranslator,
    parse_date,
    parse_minute_offset,
    parse_order_by,
    parse_query,
)
from uploadserver.types import DateRange, SortKey

JAN_1_2020 = 1577836800
FEB_1_2020 = 1580515200


@pytest.fixture
def translator():
    return FilterTranslator(AsyncMock(return_value={"alice": 1, "bob": 2}))


class TestParseQuery:
    def test_keywords_are_lists_without_duplicates(self):
        query = parse_query("ip:1.1.1.1 ip:1.1.1.1,2.2.2.2", ("ip",), ())
        assert query.keywords == {"ip": ["1.1.1.1", "2.2.2.2"]}

    def test_exclusions(self):
        query = parse_query("-ip:1.1.1.1 -thumb", ("ip",), ())
        assert query.excludes == {"ip": ["1.1.1.1"]}
        assert query.exclude_texts == ["thumb"]

    def test_quoted_values(self):
        query = parse_query('date:"2020/01/01 12:00-2020/01/02" "my file"', (), ("date",))
        assert query.ranges == {"date": ("2020/01/01 12:00", "2020/01/02")}
        assert query.texts == ["my file"]

    def test_open_ended_range(self):
        query = parse_query("date:2020/01/01- expiry:-2020/02/01", (), ("date", "expiry"))
        assert query.ranges == {"date": ("2020/01/01", None), "expiry": (None, "2020/02/01")}

    def test_unknown_key_is_text(self):
        query = parse_query("foo:bar", ("ip",), ())
        assert query.texts == ["foo:bar"]
        assert query.keywords == {}

    def test_empty_text(self):
        query = parse_query("", ("ip",), ("date",))
        assert query.keywords == {}
        assert query.texts == []


class TestParseDate:
    def test_full_date(self):
        assert parse_date("2020/01/01") == JAN_1_2020

    def test_missing_components_default_to_period_start(self):
        assert parse_date("2020") == JAN_1_2020
        assert parse_date("2020/02") == FEB_1_2020

    def test_date_and_time(self):
        assert parse_date("2020/01/01 12:30") == JAN_1_2020 + 12 * 3600 + 30 * 60
        assert parse_date("2020/01/01 12:30:15") == JAN_1_2020 + 12 * 3600 + 30 * 60 + 15

    def test_client_offset(self):
        # UTC+7 reports an offset of -420 minutes
        assert parse_date("2020/01/01", minoffset=-420) == JAN_1_2020 - 7 * 3600
        assert parse_date("2020/01/01", minoffset=60) == JAN_1_2020 + 3600

    def test_time_without_date_uses_today(self):
        now = datetime(2021, 5, 6, 18, 0, tzinfo=timezone.utc)
        expected = int(datetime(2021, 5, 6, 12, 0, tzinfo=timezone.utc).timestamp())
        assert parse_date("12:00", now=now) == expected

    @pytest.mark.parametrize("value", ["", None, "garbage", "2020-01-01", "2020/13/01", "20/01/01"])
    def test_invalid_values(self, value):
        assert parse_date(value) is None


class TestMinuteOffset:
    @pytest.mark.parametrize("value,expected", [
        ("-420", -420),
        ("60", 60),
        (None, 0),
        ("abc", 0),
        ("100000", 0),
    ])
    def test_parse(self, value, expected):
        assert parse_minute_offset(value) == expected


class TestOrderBy:
    def test_alias_and_direction(self):
        assert parse_order_by(["date:d"]) == (SortKey("timestamp", descending=True),)
        assert parse_order_by(["name"]) == (SortKey("name", descending=False),)
        assert parse_order_by(["name:asc"]) == (SortKey("name", descending=False),)

    def test_cast_and_nulls_last(self):
        keys = parse_order_by(["size:desc", "expiry", "userid:d"])
        assert keys == (
            SortKey("size", descending=True, cast="integer"),
            SortKey("expirydate", descending=False, nulls_last=True),
            SortKey("userid", descending=True, nulls_last=True),
        )


@pytest.mark.asyncio
async def test_translate_reference_example(translator):
    predicate = await translator.translate(
        "ip:10.0.0.1 -ip:- date:2020/01/01-2020/02/01 orderby:date:d",
        minoffset=0,
    )

    assert predicate.ips == ("10.0.0.1",)
    assert predicate.match_null_ip is False
    assert predicate.exclude_ips == ("-",)
    assert predicate.date_range == DateRange(JAN_1_2020, FEB_1_2020)
    assert [(key.column, key.descending) for key in predicate.order_by] == [("timestamp", True)]


@pytest.mark.asyncio
async def test_translate_null_flags(translator):
    predicate = await translator.translate("ip:- user:-")

    assert predicate.ips == ()
    assert predicate.match_null_ip is True
    assert predicate.owner_ids == ()
    assert predicate.match_null_owner is True
    translator.resolve_users.assert_not_awaited()


@pytest.mark.asyncio
async def test_translate_resolves_users(translator):
    predicate = await translator.translate("user:alice -user:bob")

    assert predicate.owner_ids == (1,)
    assert predicate.exclude_owner_ids == (2,)
    translator.resolve_users.assert_awaited_once_with(["alice", "bob"])


@pytest.mark.asyncio
async def test_translate_unknown_users(translator):
    with pytest.raises(UserNotFoundError) as exc_info:
        await translator.translate("user:alice,carol -user:dave")

    assert exc_info.value.kind == ErrorKind.USER_NOT_FOUND
    assert exc_info.value.usernames == ["carol", "dave"]
    assert exc_info.value.message == "Users not found: carol, dave."


@pytest.mark.asyncio
async def test_translate_single_unknown_user(translator):
    with pytest.raises(UserNotFoundError, match=r"^User not found: carol\.$"):
        await translator.translate("user:carol")


@pytest.mark.asyncio
async def test_translate_texts_and_invalid_ranges(translator):
    predicate = await translator.translate("*.png -thumb expiry:nope-2020")

    assert predicate.texts == ("*.png",)
    assert predicate.exclude_texts == ("thumb",)
    assert predicate.expiry_range == DateRange(None, JAN_1_2020)
    assert predicate.date_range is None

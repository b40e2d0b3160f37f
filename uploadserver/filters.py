"""
Listing filter language.

A filter is a whitespace-separated list of terms:

    ip:10.0.0.1 -ip:- user:alice,bob date:2020/01/01-2020/02/01 orderby:date:d *.png -thumb

Keyword terms (``key:value``, comma-separated values) may be negated with a
leading ``-``. Range terms take ``from-to`` with either side optional. Any
other term is matched against file names, ``*`` being a wildcard. Values with
spaces must be quoted: ``date:"2020/01/01 12:00-2020/01/02"``.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from common.logging_config import get_logger
from uploadserver.exceptions import UserNotFoundError
from uploadserver.types import DateRange, FilterPredicate, SortKey

logger = get_logger(__name__)

KEYWORDS = ("ip", "user")
RANGES = ("date", "expiry")
ORDERBY = "orderby"

NULL_VALUE = "-"

COLUMN_ALIASES = {
    "date": "timestamp",
    "expiry": "expirydate",
}

COLUMN_CASTS = {
    "size": "integer",
}

NULLS_LAST_COLUMNS = ("userid", "expirydate", "ip")

TERM_RE = re.compile(
    r"""(\S+:'(?:[^'\\]|\\.)*')"""
    r"""|(\S+:"(?:[^"\\]|\\.)*")"""
    r"""|(-?"(?:[^"\\]|\\.)*")"""
    r"""|(-?'(?:[^'\\]|\\.)*')"""
    r"""|\S+"""
)

DATE_RE = re.compile(
    r"^(\d{4})?(?:/(\d{2}))?(?:/(\d{2}))?\s?(\d{2})?(?::(\d{2}))?(?::(\d{2}))?$"
)

MAX_MINUTE_OFFSET = 24 * 60 - 1


@dataclass
class ParsedQuery:
    keywords: Dict[str, List[str]] = field(default_factory=dict)
    excludes: Dict[str, List[str]] = field(default_factory=dict)
    ranges: Dict[str, Tuple[Optional[str], Optional[str]]] = field(default_factory=dict)
    texts: List[str] = field(default_factory=list)
    exclude_texts: List[str] = field(default_factory=list)


def _unquote(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
        return value[1:-1]
    return value


def _append_unique(values: List[str], new_values: Iterable[str]) -> None:
    for value in new_values:
        if value not in values:
            values.append(value)


def parse_query(text: str, keywords: Sequence[str], ranges: Sequence[str]) -> ParsedQuery:
    """
    Tokenize filter text into keyword values, ranges and free-text terms.

    Keyword values always come back as lists with duplicates removed. A term
    whose key is not a known keyword or range is treated as free text.
    """
    query = ParsedQuery()
    if not text:
        return query

    for match in TERM_RE.finditer(text):
        term = match.group(0)

        key, sep, value = term.partition(":")
        if sep and not key.startswith(("'", '"')):
            exclude = key.startswith("-") and len(key) > 1
            name = key[1:] if exclude else key
            value = _unquote(value)

            if name in ranges:
                if exclude:
                    continue
                start, _, end = value.partition("-")
                query.ranges[name] = (start or None, end or None)
                continue

            if name in keywords:
                values = [v for v in value.split(",") if v]
                target = query.excludes if exclude else query.keywords
                _append_unique(target.setdefault(name, []), values)
                continue

        if term.startswith("-") and len(term) > 1:
            _append_unique(query.exclude_texts, [_unquote(term[1:])])
        else:
            _append_unique(query.texts, [_unquote(term)])

    return query


def parse_minute_offset(value) -> int:
    """
    Parse the client's timezone offset in minutes (UTC minus local time).
    Anything unusable counts as UTC.
    """
    try:
        offset = int(value)
    except (TypeError, ValueError):
        return 0
    if abs(offset) > MAX_MINUTE_OFFSET:
        return 0
    return offset


def parse_date(value: Optional[str], minoffset: int = 0, now: Optional[datetime] = None) -> Optional[int]:
    """
    Parse ``[YYYY][/MM][/DD] [HH][:MM][:SS]`` in the client's timezone into
    UTC epoch seconds.

    Missing month and day default to the first; a missing date means today
    and a missing time means midnight.

    Returns:
        Epoch seconds, or None if the value doesn't match
    """
    if not value:
        return None

    match = DATE_RE.match(value.strip())
    if not match or not any(match.groups()):
        return None

    year, month, day, hour, minute, second = match.groups()
    client_tz = timezone(timedelta(minutes=-minoffset))
    if now is None:
        now = datetime.now(client_tz)
    else:
        now = now.astimezone(client_tz)

    try:
        if year is not None:
            date_parts = (int(year), int(month) if month else 1, int(day) if day else 1)
        else:
            date_parts = (now.year, now.month, now.day)

        if hour is not None:
            time_parts = (int(hour), int(minute) if minute else 0, int(second) if second else 0)
        else:
            time_parts = (0, 0, 0)

        return int(datetime(*date_parts, *time_parts, tzinfo=client_tz).timestamp())
    except ValueError:
        return None


def parse_order_by(entries: Iterable[str]) -> Tuple[SortKey, ...]:
    keys = []
    for entry in entries:
        parts = entry.lower().split(":")
        column = COLUMN_ALIASES.get(parts[0], parts[0])
        descending = len(parts) > 1 and parts[1].startswith("d")
        keys.append(SortKey(
            column=column,
            descending=descending,
            nulls_last=column in NULLS_LAST_COLUMNS,
            cast=COLUMN_CASTS.get(column),
        ))
    return tuple(keys)


def _split_null_flag(values: List[str]) -> Tuple[Tuple[str, ...], bool]:
    if NULL_VALUE in values:
        return tuple(v for v in values if v != NULL_VALUE), True
    return tuple(values), False


UserLookup = Callable[[List[str]], Awaitable[Dict[str, int]]]


class FilterTranslator:
    """
    Turns filter text into a FilterPredicate.

    Usernames are resolved through resolve_users, which maps each known
    username to its id.
    """

    def __init__(self, resolve_users: UserLookup):
        self.resolve_users = resolve_users

    async def translate(self, text: str, minoffset: int = 0, now: Optional[datetime] = None) -> FilterPredicate:
        query = parse_query(text, KEYWORDS + (ORDERBY,), RANGES)

        ips, match_null_ip = _split_null_flag(query.keywords.get("ip", []))
        users, match_null_owner = _split_null_flag(query.keywords.get("user", []))
        exclude_users = tuple(query.excludes.get("user", []))

        owner_ids: Tuple[int, ...] = ()
        exclude_owner_ids: Tuple[int, ...] = ()
        if users or exclude_users:
            usernames = list(users) + [u for u in exclude_users if u not in users]
            found = await self.resolve_users(usernames)
            missing = [username for username in usernames if username not in found]
            if missing:
                logger.info(f"Filter references unknown users: {missing}")
                raise UserNotFoundError(missing)
            owner_ids = tuple(found[u] for u in users)
            exclude_owner_ids = tuple(found[u] for u in exclude_users if u not in users)

        date_ranges: Dict[str, DateRange] = {}
        for name in RANGES:
            if name not in query.ranges:
                continue
            start, end = query.ranges[name]
            date_ranges[name] = DateRange(
                start=parse_date(start, minoffset, now),
                end=parse_date(end, minoffset, now),
            )

        return FilterPredicate(
            owner_ids=owner_ids,
            exclude_owner_ids=exclude_owner_ids,
            match_null_owner=match_null_owner,
            ips=ips,
            exclude_ips=tuple(query.excludes.get("ip", [])),
            match_null_ip=match_null_ip,
            date_range=date_ranges.get("date"),
            expiry_range=date_ranges.get("expiry"),
            texts=tuple(query.texts),
            exclude_texts=tuple(query.exclude_texts),
            order_by=parse_order_by(query.keywords.get(ORDERBY, [])),
        )

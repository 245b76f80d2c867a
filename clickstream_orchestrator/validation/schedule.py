"""
Validation of data processing schedule expressions.

Two forms are accepted, as used by EventBridge schedules:
``rate(<value> <unit>)`` and the six-field ``cron(<min> <hour> <dom> <month>
<dow> <year>)``.
"""
import calendar
import logging
import re
from datetime import date, datetime, time, timedelta, timezone
from typing import Callable, List, Optional, Set, Tuple

from crontab import CronTab

from ..core.exceptions import ValidationError

logger = logging.getLogger(__name__)

CRON_REGEX = re.compile(r"^\s*cron\s*\(([^\)]*)\)\s*$")
RATE_REGEX = re.compile(r"^\s*rate\s*\(([^\)]*)\)\s*$")

DEFAULT_MIN_RATE_MINUTES = 6
DEFAULT_MIN_INTERVAL_MS = 360000
DEFAULT_OCCURRENCES = 10

MIN_INTERVAL_MESSAGE = 'Validation error: the minimum interval of data processing is 6 minutes.'

# Upper bound of each AWS cron field, used to expand "N/step".
_FIELD_MAX = (59, 23, 31, 12, 7, 2099)
_DOM_FIELD = 2
_DOW_FIELD = 4

# Day items crontab cannot evaluate: last day, nearest weekday, nth weekday.
_SPECIAL_DAY = re.compile(r'[LW#]', re.IGNORECASE)
_DOW_NAMES = {'SUN': 1, 'MON': 2, 'TUE': 3, 'WED': 4, 'THU': 5, 'FRI': 6, 'SAT': 7}
# Stop scanning for a matching day after about five years.
_MAX_SKIPPED_DAYS = 366 * 5

DayFilter = Callable[[date], bool]


def validate_interval(expression: str,
                      min_interval_ms: int = DEFAULT_MIN_INTERVAL_MS,
                      now: Optional[datetime] = None,
                      occurrences: int = DEFAULT_OCCURRENCES,
                      min_rate_minutes: int = DEFAULT_MIN_RATE_MINUTES) -> None:
    """Reject schedules that fire more often than the minimum interval.

    Args:
        expression: ``rate(...)`` or ``cron(...)`` expression
        min_interval_ms: Smallest accepted gap between two cron firings
        now: Reference time for cron evaluation (current UTC time if None)
        occurrences: Number of upcoming cron firings inspected
        min_rate_minutes: Smallest accepted ``rate(N minutes)`` value

    Raises:
        ValidationError: With the reason the expression was rejected
    """
    ok, reason = check_interval(expression, min_interval_ms, now, occurrences, min_rate_minutes)
    if not ok:
        raise ValidationError(reason)


def check_interval(expression: str,
                   min_interval_ms: int = DEFAULT_MIN_INTERVAL_MS,
                   now: Optional[datetime] = None,
                   occurrences: int = DEFAULT_OCCURRENCES,
                   min_rate_minutes: int = DEFAULT_MIN_RATE_MINUTES) -> Tuple[bool, str]:
    """Same as validate_interval, returning ``(ok, reason)`` instead of raising."""
    rate_match = RATE_REGEX.match(expression)
    if rate_match:
        return _check_rate(rate_match.group(1), min_rate_minutes)

    cron_match = CRON_REGEX.match(expression)
    if cron_match:
        return _check_cron(cron_match.group(1).strip(), min_interval_ms, now, occurrences)

    return False, 'Validation error: schedule expression format error.'


def _check_rate(body: str, min_rate_minutes: int) -> Tuple[bool, str]:
    parts = body.split()
    if len(parts) != 2 or not parts[0].isdigit():
        return False, f'Validation error: schedule expression rate({body}) format error.'

    value, unit = int(parts[0]), parts[1].lower()
    if value < 1:
        return False, 'Validation error: the rate value must be larger than 0.'
    if unit.startswith('minute') and value < min_rate_minutes:
        return False, MIN_INTERVAL_MESSAGE
    return True, ''


def _check_cron(body: str, min_interval_ms: int, now: Optional[datetime], occurrences: int) -> Tuple[bool, str]:
    try:
        run_times = next_run_times(body, now, occurrences)
    except (ValueError, KeyError, IndexError) as e:
        logger.debug(f"Cron expression {body} rejected: {e}")
        return False, f'Validation error: schedule expression({body}) parse error.'

    if not run_times:
        return False, 'Validation error: schedule expression is not a reasonable interval.'

    for previous, current in zip(run_times, run_times[1:]):
        gap_ms = (current - previous).total_seconds() * 1000
        if gap_ms < min_interval_ms:
            return False, MIN_INTERVAL_MESSAGE
    return True, ''


def next_run_times(cron_body: str, now: Optional[datetime] = None, count: int = DEFAULT_OCCURRENCES) -> List[datetime]:
    """Compute the next ``count`` firing times (naive UTC) of an AWS cron body.

    Day fields using ``L``, ``W`` or ``#`` are matched here, the remaining
    fields are evaluated by ``crontab``.

    Raises:
        ValueError: If the expression cannot be parsed
    """
    fields = cron_body.split()
    day_filter: Optional[DayFilter] = None
    if len(fields) == 6 and (_SPECIAL_DAY.search(fields[_DOM_FIELD]) or _SPECIAL_DAY.search(fields[_DOW_FIELD])):
        day_filter = day_matcher(fields[_DOM_FIELD], fields[_DOW_FIELD])
        fields[_DOM_FIELD] = fields[_DOW_FIELD] = '*'
    entry = CronTab(to_crontab(' '.join(fields)))

    if now is None:
        now = datetime.now(timezone.utc)
    if now.tzinfo is not None:
        now = now.astimezone(timezone.utc).replace(tzinfo=None)
    current = now.replace(microsecond=0)

    run_times: List[datetime] = []
    skipped_days = 0
    while len(run_times) < count:
        base = current + timedelta(seconds=1)
        delay = entry.next(now=base, default_utc=True)
        if delay is None:
            break
        candidate = base + timedelta(seconds=round(delay))
        if day_filter is not None and not day_filter(candidate.date()):
            skipped_days += 1
            if skipped_days > _MAX_SKIPPED_DAYS:
                break
            # resume two seconds before the next midnight
            current = datetime.combine(candidate.date() + timedelta(days=1), time()) - timedelta(seconds=2)
            continue
        current = candidate
        run_times.append(current)
    return run_times


def day_matcher(day_of_month: str, day_of_week: str) -> DayFilter:
    """Build a date predicate for the AWS day-of-month and day-of-week fields.

    Supports ``L``, ``LW`` and ``NW`` in day-of-month and ``L``, ``NL`` and
    ``N#K`` in day-of-week, next to plain values, ranges and steps.

    Raises:
        ValueError: If an item cannot be parsed
    """
    dom_items = _field_items(day_of_month, _dom_item)
    dow_items = _field_items(day_of_week, _dow_item)

    def matches(day: date) -> bool:
        return (any(item(day) for item in dom_items)
                and any(item(day) for item in dow_items))

    return matches


def _field_items(field: str, parse_item: Callable[[str], DayFilter]) -> List[DayFilter]:
    if field in ('*', '?'):
        return [lambda day: True]
    return [parse_item(item.upper()) for item in field.split(',')]


def _last_day(day: date) -> int:
    return calendar.monthrange(day.year, day.month)[1]


def _nearest_weekday(year: int, month: int, target: int) -> int:
    last = calendar.monthrange(year, month)[1]
    weekday = date(year, month, target).weekday()
    if weekday == 5:
        return target + 2 if target == 1 else target - 1
    if weekday == 6:
        return target - 2 if target == last else target + 1
    return target


def _aws_day_of_week(day: date) -> int:
    """1=SUN..7=SAT"""
    return (day.weekday() + 1) % 7 + 1


def _dom_item(item: str) -> DayFilter:
    if item == 'L':
        return lambda day: day.day == _last_day(day)
    if item == 'LW':
        return lambda day: day.day == _nearest_weekday(day.year, day.month, _last_day(day))
    if item.endswith('W'):
        target = _bounded_int(item[:-1], 1, 31)
        return lambda day: (target <= _last_day(day)
                            and day.day == _nearest_weekday(day.year, day.month, target))
    values = _plain_values(item, 1, 31, int)
    return lambda day: day.day in values


def _dow_item(item: str) -> DayFilter:
    if item == 'L':
        return lambda day: _aws_day_of_week(day) == 7
    if '#' in item:
        weekday, nth = item.split('#', 1)
        wanted, ordinal = _dow_number(weekday), _bounded_int(nth, 1, 5)
        return lambda day: _aws_day_of_week(day) == wanted and (day.day - 1) // 7 + 1 == ordinal
    if item.endswith('L'):
        wanted = _dow_number(item[:-1])
        return lambda day: _aws_day_of_week(day) == wanted and day.day + 7 > _last_day(day)
    values = _plain_values(item, 1, 7, _dow_number)
    return lambda day: _aws_day_of_week(day) in values


def _bounded_int(token: str, low: int, high: int) -> int:
    if not token.isdigit() or not low <= int(token) <= high:
        raise ValueError(f"{token!r} is not between {low} and {high}")
    return int(token)


def _dow_number(token: str) -> int:
    if token in _DOW_NAMES:
        return _DOW_NAMES[token]
    return _bounded_int(token, 1, 7)


def _plain_values(item: str, low: int, high: int, parse: Callable[[str], int]) -> Set[int]:
    """Expand ``*``, ``N``, ``A-B`` and their ``/step`` forms into a set."""
    step = 1
    if '/' in item:
        item, step_text = item.split('/', 1)
        step = _bounded_int(step_text, 1, high)
    if item == '*':
        start, end = low, high
    elif '-' in item:
        first, last = item.split('-', 1)
        start, end = parse(first), parse(last)
    else:
        start = parse(item)
        end = high if step > 1 else start
    if not low <= start <= end <= high:
        raise ValueError(f"invalid range {item!r}")
    return set(range(start, end + 1, step))


def to_crontab(cron_body: str) -> str:
    """Translate an AWS six-field cron body into ``crontab`` syntax.

    ``?`` becomes ``*``, AWS day-of-week numbers (1=SUN..7=SAT) become 0..6
    and ``N/step`` becomes ``N-max/step``.

    Raises:
        ValueError: If the body does not have six fields
    """
    fields = cron_body.split()
    if len(fields) != 6:
        raise ValueError(f"expected 6 fields, got {len(fields)}")

    translated = []
    for index, value in enumerate(fields):
        items = []
        for item in value.split(','):
            item = '*' if item == '?' else item
            item = _expand_start_step(item, _FIELD_MAX[index])
            if index == _DOW_FIELD:
                item = _shift_day_of_week(item)
            items.append(item.lower())
        translated.append(','.join(items))
    return ' '.join(translated)


def _expand_start_step(item: str, field_max: int) -> str:
    if '/' not in item:
        return item
    start, step = item.split('/', 1)
    if start.isdigit():
        return f"{start}-{field_max}/{step}"
    return item


def _shift_day_of_week(item: str) -> str:
    """Shift the numeric day part of a day-of-week item down by one."""
    match = re.match(r'^([0-9\-]+)(.*)$', item)
    if not match:
        return item
    days, suffix = match.groups()
    shifted = '-'.join(str(int(day) - 1) if day else day for day in days.split('-'))
    return shifted + suffix

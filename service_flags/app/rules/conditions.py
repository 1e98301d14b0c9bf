"""
Value extraction and comparison helpers used by condition evaluation.

Every comparison fails closed: malformed or missing input yields False
rather than an exception.
"""

import math
import re
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, Optional, Tuple

from ua_parser import parse as parse_user_agent_string

from .models import Subject


MAX_USER_AGENT_LENGTH = 1000
MAX_REGEX_INPUT_LENGTH = 1000
SECONDS_TIMESTAMP_CEILING = 10_000_000_000

# Memo for the most recently parsed user agent only; replaced as one tuple.
_last_user_agent: Tuple[Optional[str], Any] = (None, None)


def get_unit_id(subject: Subject, id_type: Optional[str]) -> Optional[str]:
    """Resolve the identifier a rule or condition buckets on."""
    if isinstance(id_type, str) and id_type.lower() != "userid":
        unit_id = subject.custom_ids.get(id_type)
        if unit_id is not None:
            return unit_id
        return get_case_insensitive(subject.custom_ids, id_type)
    return subject.user_id


def get_case_insensitive(mapping: Optional[Dict[str, Any]], key: str) -> Any:
    if not mapping:
        return None
    lowered = key.lower()
    for candidate, value in mapping.items():
        if candidate.lower() == lowered:
            return value
    return None


def get_from_environment(subject: Subject, field: Optional[str]) -> Any:
    if field is None:
        return None
    return get_case_insensitive(subject.environment, field)


def parse_user_agent(ua: str):
    global _last_user_agent
    cached_ua, cached_result = _last_user_agent
    if cached_ua == ua:
        return cached_result
    result = parse_user_agent_string(ua)
    _last_user_agent = (ua, result)
    return result


def _join_version(part) -> Optional[str]:
    if part is None:
        return None
    pieces = [p for p in (part.major, part.minor, part.patch) if p]
    return ".".join(pieces) if pieces else None


def get_from_user_agent(subject: Subject, field: Optional[str]) -> Any:
    if field is None:
        return None
    ua = subject.get_field("userAgent")
    if not isinstance(ua, str) or len(ua) > MAX_USER_AGENT_LENGTH:
        return None

    parsed = parse_user_agent(ua)
    key = field.lower()
    if key in ("os_name", "osname"):
        return parsed.os.family if parsed.os else None
    if key in ("os_version", "osversion"):
        return _join_version(parsed.os)
    if key in ("browser_name", "browsername"):
        return parsed.user_agent.family if parsed.user_agent else None
    if key in ("browser_version", "browserversion"):
        return _join_version(parsed.user_agent)
    return None


def _to_number(value: Any) -> Optional[float]:
    if value is None:
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(number):
        return None
    return number


def number_compare(fn: Callable[[float, float], bool]) -> Callable[[Any, Any], bool]:
    def compare(a: Any, b: Any) -> bool:
        num_a = _to_number(a)
        num_b = _to_number(b)
        if num_a is None or num_b is None:
            return False
        return fn(num_a, num_b)
    return compare


def remove_version_extension(version: str) -> str:
    return version.split("-", 1)[0]


def version_compare(first: Any, second: Any) -> Optional[int]:
    """Compare dotted versions, ignoring any -suffix. None when malformed."""
    if not isinstance(first, str) or not isinstance(second, str):
        return None
    version1 = remove_version_extension(first)
    version2 = remove_version_extension(second)
    if not version1 or not version2:
        return None

    parts1 = version1.split(".")
    parts2 = version2.split(".")
    for i in range(max(len(parts1), len(parts2))):
        try:
            n1 = int(parts1[i]) if i < len(parts1) else 0
            n2 = int(parts2[i]) if i < len(parts2) else 0
        except ValueError:
            return None
        if n1 < n2:
            return -1
        if n1 > n2:
            return 1
    return 0


def version_compare_helper(fn: Callable[[int], bool]) -> Callable[[Any, Any], bool]:
    def compare(a: Any, b: Any) -> bool:
        comparison = version_compare(a, b)
        if comparison is None:
            return False
        return fn(comparison)
    return compare


def stringify(value: Any) -> str:
    """String form matching the JSON rendering of scalars."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def string_compare(ignore_case: bool, fn: Callable[[str, str], bool]) -> Callable[[Any, Any], bool]:
    def compare(a: Any, b: Any) -> bool:
        if a is None or b is None:
            return False
        left, right = stringify(a), stringify(b)
        if ignore_case:
            return fn(left.lower(), right.lower())
        return fn(left, right)
    return compare


def strict_equals(a: Any, b: Any) -> bool:
    # True == 1 in Python; booleans only ever equal booleans here
    if isinstance(a, bool) != isinstance(b, bool):
        return False
    return a == b


def array_any(value: Any, array: Any, fn: Callable[[Any, Any], bool]) -> bool:
    if not isinstance(array, list):
        return False
    return any(fn(value, candidate) for candidate in array)


def _leading_int(value: Any) -> Optional[int]:
    match = re.match(r"^\s*([+-]?\d+)", stringify(value))
    return int(match.group(1)) if match else None


def _hashable_set(values: Iterable[Any]) -> set:
    result = set()
    for value in values:
        try:
            result.add(value)
        except TypeError:
            continue
    return result


def _set_contains(value_set: set, item: Any) -> bool:
    try:
        if item in value_set:
            return True
    except TypeError:
        return False
    parsed = _leading_int(item)
    return parsed is not None and parsed in value_set


def array_has_value(values: list, targets: list) -> bool:
    value_set = _hashable_set(values)
    return any(_set_contains(value_set, target) for target in targets)


def array_has_all_values(values: list, targets: list) -> bool:
    value_set = _hashable_set(values)
    return all(_set_contains(value_set, target) for target in targets)


def _time_in_ms(value: Any) -> Optional[float]:
    number = _to_number(value)
    if number is None or isinstance(value, bool):
        return None
    if number < SECONDS_TIMESTAMP_CEILING:
        number *= 1000
    return number


def parse_date(value: Any) -> Optional[datetime]:
    """Accept ISO strings, epoch milliseconds, or epoch seconds."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str) and _to_number(value) is None:
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=timezone.utc)
            return parsed
        except ValueError:
            pass
    millis = _time_in_ms(value)
    if millis is None:
        return None
    try:
        return datetime.fromtimestamp(millis / 1000, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


def date_compare(fn: Callable[[datetime, datetime], bool]) -> Callable[[Any, Any], bool]:
    def compare(a: Any, b: Any) -> bool:
        date_a = parse_date(a)
        date_b = parse_date(b)
        if date_a is None or date_b is None:
            return False
        return fn(date_a, date_b)
    return compare


def same_day(a: datetime, b: datetime) -> bool:
    return a.astimezone(timezone.utc).date() == b.astimezone(timezone.utc).date()


def regex_matches(value: Any, pattern: Any) -> bool:
    if value is None or not isinstance(pattern, str):
        return False
    text = stringify(value)
    if len(text) >= MAX_REGEX_INPUT_LENGTH:
        return False
    try:
        return re.search(pattern, text) is not None
    except re.error:
        return False

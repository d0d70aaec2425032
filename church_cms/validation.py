"""Declarative request validation.

A `RuleSet` lists per-field `FieldRule`s and `CrossFieldRule`s. `validate`
evaluates every field independently and reports all violations at once;
values that pass their own rule are normalized in place (strings trimmed,
booleans/integers/dates coerced). Cross-field rules run afterwards.
"""
import datetime
import logging
import re
import uuid
from typing import Any, Callable, Iterable, Optional
from urllib.parse import urlparse

from fastapi import Request
from pydantic import BaseModel

from .constants import DEFAULT_PAGE, DEFAULT_PAGE_LIMIT, MAX_PAGE_LIMIT
from .errors import ValidationError

logger = logging.getLogger(__name__)

_MISSING = object()

_INT_RE = re.compile(r"^[+-]?\d+$")
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_TRUE = {"true", "1"}
_FALSE = {"false", "0"}

KINDS = {"string", "int", "bool", "date", "url", "uuid", "email"}


class Violation(BaseModel):
    field: str
    message: str


class ValidationResult:
    """Ordered field violations; empty means success."""

    def __init__(self, violations: Optional[list[Violation]] = None):
        self.violations: list[Violation] = list(violations or [])

    @property
    def ok(self) -> bool:
        return not self.violations

    def add(self, field: str, message: str):
        self.violations.append(Violation(field=field, message=message))

    def fields(self) -> list[str]:
        return [v.field for v in self.violations]

    def as_list(self) -> list[dict]:
        return [v.model_dump() for v in self.violations]

    def __len__(self):
        return len(self.violations)

    def __iter__(self):
        return iter(self.violations)

    def __repr__(self):
        return f"ValidationResult({self.as_list()!r})"


class _Invalid(Exception):
    pass


def _resolve(bound):
    return bound() if callable(bound) else bound


class FieldRule:
    """Rule for a single input field.

    Checks run in order (presence, type/format, length, range, choices,
    custom `checks`); the first failing check is the field's only violation.
    Messages may use ``{label}``, ``{min}`` and ``{max}`` placeholders.
    """

    DEFAULT_MESSAGES = {
        'required': "{label} is required",
        'string': "{label} must be a string",
        'int': "{label} must be an integer",
        'bool': "{label} must be a boolean value",
        'date': "Invalid date format. Use YYYY-MM-DD",
        'url': "{label} must be a valid URL",
        'uuid': "Invalid ID format",
        'email': "{label} must be a valid email address",
        'length': "{label} must be between {min} and {max} characters",
        'range': "{label} must be between {min} and {max}",
        'choices': "Invalid {label}",
    }

    def __init__(
        self,
        name: str,
        kind: str = "string",
        *,
        required: bool = False,
        optional_falsy: bool = False,
        trim: bool = True,
        min_length: Optional[int] = None,
        max_length: Optional[int] = None,
        min_value: Any = None,
        max_value: Any = None,
        choices: Optional[Iterable] = None,
        default: Any = _MISSING,
        checks: Iterable[Callable[[Any], Optional[str]]] = (),
        messages: Optional[dict] = None,
        label: Optional[str] = None,
    ):
        if kind not in KINDS:
            raise ValueError(f"Unknown field kind: {kind}")
        self.name = name
        self.kind = kind
        self.required = required
        self.optional_falsy = optional_falsy
        self.trim = trim
        self.min_length = min_length
        self.max_length = max_length
        self.min_value = min_value
        self.max_value = max_value
        self.choices = tuple(choices) if choices is not None else None
        self.default = default
        self.checks = tuple(checks)
        self.messages = {**self.DEFAULT_MESSAGES, **(messages or {})}
        self.label = label or name.replace('_', ' ').capitalize()

    def _fail(self, key: str, **bounds):
        message = self.messages[key]
        raise _Invalid(message.format(label=self.label, **bounds))

    def is_absent(self, raw) -> bool:
        if raw is _MISSING or raw is None:
            return True
        if self.optional_falsy and not self.required:
            return raw == '' or raw is False or (isinstance(raw, str) and not raw.strip())
        return False

    def _coerce(self, raw):
        kind = self.kind
        if kind in ("string", "url", "uuid", "email"):
            if not isinstance(raw, str):
                self._fail('string' if kind == 'string' else kind)
            value = raw.strip() if self.trim else raw
            if self.required and not value.strip():
                self._fail('required')
            if kind == "url" and not is_url(value):
                self._fail('url')
            if kind == "uuid":
                if not is_uuid(value):
                    self._fail('uuid')
                value = str(uuid.UUID(value))
            if kind == "email" and not _EMAIL_RE.match(value):
                self._fail('email')
            return value
        if kind == "int":
            if isinstance(raw, bool):
                self._fail('int')
            if isinstance(raw, int):
                return raw
            if isinstance(raw, str) and _INT_RE.match(raw.strip()):
                return int(raw.strip())
            self._fail('int')
        if kind == "bool":
            if isinstance(raw, bool):
                return raw
            if isinstance(raw, str) and raw.strip().lower() in _TRUE | _FALSE:
                return raw.strip().lower() in _TRUE
            if isinstance(raw, int) and raw in (0, 1):
                return bool(raw)
            self._fail('bool')
        if kind == "date":
            parsed = parse_date(raw)
            if parsed is None:
                self._fail('date')
            return parsed
        raise AssertionError(kind)

    def check(self, raw):
        """Return the normalized value or raise `_Invalid` with the message."""
        value = self._coerce(raw)

        if isinstance(value, str) and (self.min_length is not None or self.max_length is not None):
            lo = self.min_length if self.min_length is not None else 0
            hi = self.max_length
            if len(value) < lo or (hi is not None and len(value) > hi):
                self._fail('length', min=lo, max=hi)

        if self.min_value is not None or self.max_value is not None:
            lo = _resolve(self.min_value)
            hi = _resolve(self.max_value)
            if (lo is not None and value < lo) or (hi is not None and value > hi):
                self._fail('range', min=lo, max=hi)

        if self.choices is not None and value not in self.choices:
            self._fail('choices', min=None, max=None)

        for fn in self.checks:
            message = fn(value)
            if message:
                raise _Invalid(message)

        return value


class CrossFieldRule:
    """Constraint over several fields, evaluated after per-field rules.

    `check(raw, values)` receives the raw input and the normalized values and
    returns a message or None. The rule is skipped when any of `depends_on`
    failed its own rule.
    """

    def __init__(self, field: str, check: Callable[[dict, dict], Optional[str]], depends_on: Iterable[str] = ()):
        self.field = field
        self.check = check
        self.depends_on = tuple(depends_on) or (field,)


class RuleSet:
    def __init__(self, fields: Iterable[FieldRule], cross_rules: Iterable[CrossFieldRule] = ()):
        self.fields = tuple(fields)
        self.cross_rules = tuple(cross_rules)

    def names(self) -> list[str]:
        return [f.name for f in self.fields]


def validate(data: dict, rule_set: RuleSet) -> ValidationResult:
    """Evaluate every rule against `data`; normalize passing fields in place."""
    result = ValidationResult()
    raw = dict(data)
    failed = set()

    for rule in rule_set.fields:
        value = raw.get(rule.name, _MISSING)
        if rule.is_absent(value):
            if rule.required:
                result.add(rule.name, rule.messages['required'].format(label=rule.label))
                failed.add(rule.name)
            elif rule.default is not _MISSING:
                data[rule.name] = rule.default
            elif value is not _MISSING and rule.optional_falsy:
                data[rule.name] = None
            continue
        try:
            data[rule.name] = rule.check(value)
        except _Invalid as exc:
            result.add(rule.name, str(exc))
            failed.add(rule.name)

    for cross in rule_set.cross_rules:
        if failed.intersection(cross.depends_on):
            continue
        message = cross.check(raw, data)
        if message:
            result.add(cross.field, message)

    if not result.ok:
        logger.debug("Validation failed: %s", result.as_list())
    return result


def validate_or_raise(data: dict, rule_set: RuleSet) -> dict:
    result = validate(data, rule_set)
    if not result.ok:
        raise ValidationError(result)
    return data


async def _read_body(request: Request) -> dict:
    content_type = request.headers.get('content-type', '')
    if content_type.startswith('application/json'):
        try:
            body = await request.json()
        except ValueError:
            result = ValidationResult()
            result.add('body', 'Request body must be valid JSON')
            raise ValidationError(result)
        if not isinstance(body, dict):
            result = ValidationResult()
            result.add('body', 'Request body must be a JSON object')
            raise ValidationError(result)
        return body
    if content_type.startswith(('multipart/form-data', 'application/x-www-form-urlencoded')):
        form = await request.form()
        # Files are handled by the upload pipeline, not the validator
        return {k: v for k, v in form.items() if isinstance(v, str)}
    return {}


def validated_body(rule_set: RuleSet):
    """Dependency factory: validate the JSON or form body against `rule_set`."""
    async def _dependency(request: Request) -> dict:
        data = await _read_body(request)
        return validate_or_raise(data, rule_set)
    return _dependency


def validated_query(rule_set: RuleSet):
    """Dependency factory: validate query parameters against `rule_set`."""
    async def _dependency(request: Request) -> dict:
        data = dict(request.query_params)
        return validate_or_raise(data, rule_set)
    return _dependency


def parse_date(raw) -> Optional[datetime.date]:
    if isinstance(raw, datetime.datetime):
        return raw.date()
    if isinstance(raw, datetime.date):
        return raw
    if not isinstance(raw, str) or not raw.strip():
        return None
    s = raw.strip()
    try:
        return datetime.date.fromisoformat(s)
    except ValueError:
        pass
    try:
        return datetime.datetime.fromisoformat(s.replace('Z', '+00:00')).date()
    except ValueError:
        return None


def is_url(value: str) -> bool:
    if not value or any(c.isspace() for c in value):
        return False
    parsed = urlparse(value if '://' in value else f"http://{value}")
    if parsed.scheme not in ('http', 'https'):
        return False
    host = parsed.hostname or ''
    return host == 'localhost' or ('.' in host and not host.startswith('.') and not host.endswith('.'))


def is_uuid(value) -> bool:
    try:
        uuid.UUID(str(value).strip())
        return True
    except ValueError:
        return False


MIN_CONTENT_DATE = datetime.date(1900, 1, 1)


def one_year_from_today() -> datetime.date:
    today = datetime.date.today()
    try:
        return today.replace(year=today.year + 1)
    except ValueError:  # Feb 29
        return today.replace(year=today.year + 1, day=28)


def _end_after_start(raw: dict, values: dict) -> Optional[str]:
    start, end = values.get('startDate'), values.get('endDate')
    if start is not None and end is not None and end < start:
        return "End date must be after start date"
    return None


SERMON_RULES = RuleSet([
    FieldRule('title', required=True, min_length=1, max_length=255,
              messages={'length': "Title must be between 1 and 255 characters"}),
    FieldRule('speaker', required=True, min_length=1, max_length=255,
              messages={'length': "Speaker name must be between 1 and 255 characters"}),
    FieldRule('bible_passage', optional_falsy=True, max_length=100,
              messages={'length': "Bible passage cannot be longer than 100 characters"}),
    FieldRule('sermon_date', 'date', required=True,
              min_value=MIN_CONTENT_DATE, max_value=one_year_from_today,
              messages={'required': "Sermon date is required", 'range': "Date must be between {min} and {max}"}),
    FieldRule('description', optional_falsy=True, trim=False),
    FieldRule('transcript', optional_falsy=True, trim=False),
    FieldRule('thumbnail_url', 'url', optional_falsy=True, max_length=2000,
              messages={'url': "Thumbnail must be a valid URL",
                        'length': "Thumbnail URL cannot be longer than 2000 characters"}),
    FieldRule('is_published', 'bool', messages={'bool': "Published status must be a boolean value"}),
    FieldRule('is_featured', 'bool', messages={'bool': "Featured status must be a boolean value"}),
    FieldRule('view_count', 'int', min_value=0, messages={'int': "View count must be a non-negative integer",
                                                          'range': "View count must be a non-negative integer"}),
    FieldRule('like_count', 'int', min_value=0, messages={'int': "Like count must be a non-negative integer",
                                                          'range': "Like count must be a non-negative integer"}),
    FieldRule('share_count', 'int', min_value=0, messages={'int': "Share count must be a non-negative integer",
                                                           'range': "Share count must be a non-negative integer"}),
    FieldRule('sermon_notes', optional_falsy=True, trim=False),
])

SERMON_SORT_FIELDS = ('sermon_date', 'title', 'speaker', 'view_count', 'like_count', 'created_at')

SERMON_LIST_RULES = RuleSet(
    [
        FieldRule('page', 'int', min_value=1, default=DEFAULT_PAGE,
                  messages={'int': "Page must be a positive integer", 'range': "Page must be a positive integer"}),
        FieldRule('limit', 'int', min_value=1, max_value=MAX_PAGE_LIMIT, default=DEFAULT_PAGE_LIMIT,
                  messages={'int': f"Limit must be between 1 and {MAX_PAGE_LIMIT}",
                            'range': "Limit must be between {min} and {max}"}),
        FieldRule('search', messages={'string': "Search term must be a string"}),
        FieldRule('speaker', messages={'string': "Speaker filter must be a string"}),
        FieldRule('bible_passage', messages={'string': "Bible passage filter must be a string"}),
        FieldRule('startDate', 'date', min_value=MIN_CONTENT_DATE,
                  messages={'date': "Start date must be a valid date (YYYY-MM-DD)",
                            'range': "Start date must be after {min}"}),
        FieldRule('endDate', 'date', max_value=one_year_from_today,
                  messages={'date': "End date must be a valid date (YYYY-MM-DD)",
                            'range': "End date must be before {max}"}),
        FieldRule('is_published', 'bool', messages={'bool': "Published must be either true or false"}),
        FieldRule('is_featured', 'bool', messages={'bool': "Featured must be either true or false"}),
        FieldRule('sortBy', choices=SERMON_SORT_FIELDS, messages={'choices': "Invalid sort field"}),
        FieldRule('order', choices=('asc', 'desc'), default='desc',
                  messages={'choices': "Order must be either asc or desc"}),
    ],
    cross_rules=[CrossFieldRule('endDate', _end_after_start, depends_on=('startDate', 'endDate'))],
)

LIKE_RULES = RuleSet([
    FieldRule('action', required=True, choices=('like', 'unlike'),
              messages={'required': 'Action must be either "like" or "unlike"',
                        'choices': 'Action must be either "like" or "unlike"'}),
])

SHARE_RULES = RuleSet([
    FieldRule('platform', choices=('facebook', 'twitter', 'whatsapp', 'email', 'link'),
              messages={'choices': "Invalid platform"}),
])

BLOG_RULES = RuleSet([
    FieldRule('title', required=True, min_length=5, max_length=255,
              messages={'length': "Title must be between 5 and 255 characters"}),
    FieldRule('content', required=True, min_length=50, trim=False,
              messages={'length': "Content must be at least 50 characters long"}),
    FieldRule('excerpt', optional_falsy=True, max_length=500),
    FieldRule('publish', 'bool', default=False),
])

BLOG_UPDATE_RULES = RuleSet([
    FieldRule('title', optional_falsy=True, min_length=5, max_length=255,
              messages={'length': "Title must be between 5 and 255 characters"}),
    FieldRule('content', optional_falsy=True, min_length=50, trim=False,
              messages={'length': "Content must be at least 50 characters long"}),
    FieldRule('excerpt', optional_falsy=True, max_length=500),
    FieldRule('publish', 'bool'),
])

MINISTRY_RULES = RuleSet([
    FieldRule('name', required=True, min_length=2, max_length=255),
    FieldRule('description', required=True, min_length=10, max_length=5000),
    FieldRule('short_description', optional_falsy=True, max_length=500),
    FieldRule('contact_email', 'email', optional_falsy=True, max_length=255),
    FieldRule('contact_phone', optional_falsy=True, max_length=50),
    FieldRule('contact_person', optional_falsy=True, max_length=255),
    FieldRule('meeting_times', optional_falsy=True),
    FieldRule('meeting_location', optional_falsy=True),
    FieldRule('is_active', 'bool'),
])

"""
Record shaping and validation for events, registrations and settings.

Everything here is storage agnostic: the functions take plain dicts coming
from request bodies or from a store and return new dicts ready to persist or
to serialize.
"""

import re
import uuid
from datetime import datetime, timezone

from config import EVENT_MODES, IST
from errors import ValidationError

EMAIL_PATTERN = r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$'

NAME_MAX_LENGTH = 100
TAGLINE_MAX_LENGTH = 200
FIELD_MAX_LENGTH = 200

EVENT_TEXT_FIELDS = ('image', 'imagePath', 'date', 'time', 'duration', 'location',
                     'category', 'teamSize', 'registrationDeadline')
EVENT_LIST_FIELDS = ('prizes', 'requirements', 'highlights')
EVENT_FIELDS = (('name', 'tagline', 'description', 'mode', 'deadline', 'registrationOpen')
                + EVENT_TEXT_FIELDS + EVENT_LIST_FIELDS)

STATUS_OPEN = 'open'
STATUS_CLOSED = 'closed'


def is_valid_email(email):
    return isinstance(email, str) and re.match(EMAIL_PATTERN, email.strip()) is not None


def normalize_email(email):
    """Trim and lower-case an email for storage and comparison"""
    return str(email or '').strip().lower()


def sanitize(value, max_length=FIELD_MAX_LENGTH):
    """Trim a free-text value and cap its length"""
    if value is None:
        return ''
    text = str(value).strip()
    if max_length is None:
        return text
    return text[:max_length].strip()


def parse_event_id(value):
    """Coerce an event id from a body or query string to int"""
    if isinstance(value, bool):
        raise ValidationError('Invalid event ID')
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        raise ValidationError('Invalid event ID')


def parse_deadline(value, tz=IST):
    """
    Parse an ISO-8601 deadline. Naive values are read in the local timezone.
    Returns None for an empty value, raises ValueError when unparsable.
    """
    if value is None or str(value).strip() == '':
        return None
    text = str(value).strip()
    if text.endswith('Z'):
        text = text[:-1] + '+00:00'
    deadline = datetime.fromisoformat(text)
    if deadline.tzinfo is None:
        deadline = deadline.replace(tzinfo=tz)
    return deadline


def _clean_list(key, value):
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValidationError(f'{key} must be a list')
    return [str(item).strip() for item in value if item is not None and str(item).strip()]


def _clean_event_fields(fields, tz):
    """Validate and normalize the event fields present in a request body"""
    cleaned = {}
    for key in EVENT_FIELDS:
        if key not in fields:
            continue
        value = fields[key]
        if key == 'name':
            cleaned[key] = sanitize(value, NAME_MAX_LENGTH)
        elif key == 'tagline':
            cleaned[key] = sanitize(value, TAGLINE_MAX_LENGTH)
        elif key == 'description':
            cleaned[key] = sanitize(value, None)
        elif key == 'mode':
            if value not in EVENT_MODES:
                raise ValidationError(f'Invalid mode. Allowed: {", ".join(EVENT_MODES)}')
            cleaned[key] = value
        elif key == 'deadline':
            try:
                parse_deadline(value, tz)
            except (TypeError, ValueError):
                raise ValidationError('Invalid deadline, expected an ISO-8601 timestamp')
            cleaned[key] = str(value).strip() if value else ''
        elif key == 'registrationOpen':
            if not isinstance(value, bool):
                raise ValidationError('registrationOpen must be true or false')
            cleaned[key] = value
        elif key in EVENT_LIST_FIELDS:
            cleaned[key] = _clean_list(key, value)
        elif key == 'imagePath':
            cleaned[key] = sanitize(value, None) or None
        else:
            cleaned[key] = sanitize(value, None)
    return cleaned


def build_event(fields, event_id, tz=IST):
    """Create a new event dict with defaults for every unspecified field"""
    fields = dict(fields or {})
    # Blank mode and null toggle fall back to the defaults
    if fields.get('mode') in (None, ''):
        fields.pop('mode', None)
    if fields.get('registrationOpen') is None:
        fields.pop('registrationOpen', None)
    cleaned = _clean_event_fields(fields, tz)
    event = {
        'id': event_id,
        'name': cleaned.get('name') or 'New Event',
        'tagline': cleaned.get('tagline', ''),
        'description': cleaned.get('description', ''),
        'image': cleaned.get('image') or '📅',
        'imagePath': cleaned.get('imagePath'),
        'date': cleaned.get('date', ''),
        'time': cleaned.get('time', ''),
        'duration': cleaned.get('duration', ''),
        'mode': cleaned.get('mode', 'Offline'),
        'location': cleaned.get('location', ''),
        'category': cleaned.get('category', ''),
        'teamSize': cleaned.get('teamSize') or 'Individual',
        'registrationDeadline': cleaned.get('registrationDeadline', ''),
        'deadline': cleaned.get('deadline', ''),
        'registrationOpen': cleaned.get('registrationOpen', True),
    }
    for key in EVENT_LIST_FIELDS:
        event[key] = cleaned.get(key, [])
    return event


def apply_event_update(event, fields, tz=IST):
    """Merge a partial update over an existing event; the id never changes"""
    updated = dict(event)
    updated.update(_clean_event_fields(fields or {}, tz))
    updated['id'] = event['id']
    return updated


def build_registration(fields, event=None, now=None):
    """
    Validate a public registration submission and build the stored record.
    `event` is the referenced event when it exists, used for the name snapshot.
    """
    fields = fields or {}
    name = sanitize(fields.get('name'))
    email = normalize_email(fields.get('email'))
    event_id = fields.get('eventId')

    if not name or not email or event_id in (None, ''):
        raise ValidationError('Missing required fields')
    if not is_valid_email(email):
        raise ValidationError('Invalid email format')
    if len(email) > FIELD_MAX_LENGTH:
        raise ValidationError(f'Email cannot be longer than {FIELD_MAX_LENGTH} characters')

    event_name = sanitize(fields.get('eventName'))
    if not event_name and event:
        event_name = sanitize(event.get('name'))

    now = now or datetime.now(timezone.utc)
    return {
        'id': uuid.uuid4().hex,
        'name': name,
        'email': email,
        'course': sanitize(fields.get('course')) or 'Not specified',
        'year': sanitize(fields.get('year')) or 'Not specified',
        'college': sanitize(fields.get('college')) or 'Not specified',
        'phone': sanitize(fields.get('phone')) or 'Not provided',
        'eventId': parse_event_id(event_id),
        'eventName': event_name or 'Unknown Event',
        'registeredAt': now.isoformat(),
    }


def merge_settings(current, partial):
    """Shallow-merge a partial settings update over the current settings"""
    if not isinstance(partial, dict):
        raise ValidationError('Settings must be a JSON object')
    if 'registrationOpen' in partial and not isinstance(partial['registrationOpen'], bool):
        raise ValidationError('registrationOpen must be true or false')
    merged = dict(current)
    merged.update(partial)
    return merged


def registration_status(event, settings, now=None, tz=IST):
    """
    Derived availability of an event: open only when the global toggle, the
    event toggle and the deadline (if any) all allow it.
    """
    if not settings.get('registrationOpen', True):
        return STATUS_CLOSED
    if not event.get('registrationOpen', True):
        return STATUS_CLOSED
    try:
        deadline = parse_deadline(event.get('deadline'), tz)
    except (TypeError, ValueError):
        # Unparsable legacy deadlines are ignored
        deadline = None
    if deadline is not None:
        now = now or datetime.now(timezone.utc)
        if now >= deadline:
            return STATUS_CLOSED
    return STATUS_OPEN


def with_status(event, settings, now=None, tz=IST):
    """Copy of an event annotated with its derived registration status"""
    annotated = dict(event)
    annotated['registrationStatus'] = registration_status(event, settings, now, tz)
    return annotated

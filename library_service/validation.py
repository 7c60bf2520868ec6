"""Request body checks shared by the route handlers.

``Payload`` reads fields from a decoded JSON body, collects every problem
it finds and raises a single ``ValidationError`` from ``validate()``, so a
client sees all bad fields at once.
"""

import re
from datetime import datetime, timezone

from .errors import ValidationError

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
ISBN_RE = re.compile(r"^(?:\d{13}|\d{10})$")

# ids are stored in 32-bit INTEGER columns
MAX_ID = 2**31 - 1


def parse_datetime(value):
    """Parse an ISO 8601 string into a naive UTC datetime, or None if invalid."""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None

    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


class Payload:
    def __init__(self, data):
        self.data = data if isinstance(data, dict) else {}
        self.errors = []

    def _missing(self, value):
        return value is None or (isinstance(value, str) and not value.strip())

    def string(self, key, label, min_len=0, max_len=None, required=True):
        value = self.data.get(key)
        if self._missing(value):
            if required:
                self.errors.append(f"{label} is required")
            return "" if required or value is not None else None
        if not isinstance(value, str):
            self.errors.append(f"{label} must be a string")
            return None

        value = value.strip()
        if max_len is not None and min_len and not min_len <= len(value) <= max_len:
            self.errors.append(f"{label} must be between {min_len} and {max_len} characters")
        elif max_len is not None and len(value) > max_len:
            self.errors.append(f"{label} cannot exceed {max_len} characters")
        return value

    def email(self, key, label="Email", max_len=100):
        value = self.string(key, label, max_len=max_len)
        if value and not EMAIL_RE.match(value):
            self.errors.append(f"{label} is not a valid email address")
        return value

    def isbn(self, key, label="ISBN"):
        value = self.string(key, label)
        if value and not ISBN_RE.match(value):
            self.errors.append(f"{label} must have 10 or 13 digits")
        return value

    def integer(self, key, label, min_value=None, max_value=None, required=True):
        value = self.data.get(key)
        if value is None or value == "":
            if required:
                self.errors.append(f"{label} is required")
            return None
        if isinstance(value, bool) or not isinstance(value, (int, str)):
            self.errors.append(f"{label} must be an integer")
            return None
        try:
            value = int(value)
        except ValueError:
            self.errors.append(f"{label} must be an integer")
            return None

        if min_value is not None and max_value is not None:
            if not min_value <= value <= max_value:
                self.errors.append(f"{label} must be between {min_value} and {max_value}")
        elif min_value is not None and value < min_value:
            self.errors.append(f"{label} must be at least {min_value}")
        return value

    def int_list(self, key, label, min_items=0, min_value=1, max_value=MAX_ID):
        value = self.data.get(key)
        if value is None:
            value = []
        if not isinstance(value, list) or any(
            isinstance(v, bool) or not isinstance(v, int) for v in value
        ):
            self.errors.append(f"{label} must be a list of integers")
            return []
        if len(value) < min_items:
            self.errors.append(f"At least {min_items} {label.lower()} must be selected")
        if any(not min_value <= v <= max_value for v in value):
            self.errors.append(f"{label} must be between {min_value} and {max_value}")
            return []
        # keep request order, drop repeats
        return list(dict.fromkeys(value))

    def datetime(self, key, label, required=True):
        value = self.data.get(key)
        if self._missing(value):
            if required:
                self.errors.append(f"{label} is required")
            return None
        parsed = parse_datetime(value)
        if parsed is None:
            self.errors.append(f"{label} must be an ISO 8601 date-time")
        return parsed

    def id(self, key, label, required=True):
        return self.integer(key, label, min_value=1, max_value=MAX_ID, required=required)

    def choice(self, key, label, choices, default=None):
        value = self.data.get(key)
        if self._missing(value):
            return default
        if value not in choices:
            self.errors.append(f"{label} must be one of: {', '.join(choices)}")
            return default
        return value

    def validate(self):
        if self.errors:
            raise ValidationError(self.errors)
        return self

"""
Transport Form Validation Utilities
Coerces raw request values (strings from JSON/forms or Python objects) into
the types the transport tables store
"""

from datetime import datetime, date, time
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from transport_errors import MissingField, InvalidValue

TWO_PLACES = Decimal('0.01')


class TransportValidator:
    """Validates transport data"""

    @staticmethod
    def require(data, *fields):
        """Raise MissingField for the first absent or blank field"""
        for field in fields:
            value = data.get(field)
            if value is None or (isinstance(value, str) and not value.strip()):
                raise MissingField(field)

    @staticmethod
    def text(value, field, max_length=None):
        if value is None:
            return None
        cleaned = str(value).strip()
        if not cleaned:
            return None
        if max_length and len(cleaned) > max_length:
            raise InvalidValue(f"must be at most {max_length} characters", field=field)
        return cleaned

    @staticmethod
    def enum_value(enum_cls, value, field, default=None):
        """
        Accept an enum member, its value or its name (case-insensitive)
        Returns:
            enum member, or default when value is empty
        Raises:
            InvalidValue listing the allowed values
        """
        if value is None or value == '':
            return default
        if isinstance(value, enum_cls):
            return value
        raw = str(value).strip()
        for member in enum_cls:
            if raw.lower() in (member.value.lower(), member.name.lower()):
                return member
        allowed = ', '.join(m.value for m in enum_cls)
        raise InvalidValue(f"must be one of: {allowed}", field=field, value=value)

    @staticmethod
    def time_value(value, field):
        """Accept a time object or 'HH:MM' / 'HH:MM:SS'"""
        if value is None or value == '':
            return None
        if isinstance(value, time):
            return value
        raw = str(value).strip()
        for fmt in ('%H:%M', '%H:%M:%S'):
            try:
                return datetime.strptime(raw, fmt).time()
            except ValueError:
                continue
        raise InvalidValue("must be in HH:MM format", field=field, value=value)

    @staticmethod
    def date_value(value, field):
        """Accept a date object or 'YYYY-MM-DD'"""
        if value is None or value == '':
            return None
        if isinstance(value, datetime):
            return value.date()
        if isinstance(value, date):
            return value
        try:
            return datetime.strptime(str(value).strip(), '%Y-%m-%d').date()
        except ValueError:
            raise InvalidValue("must be in YYYY-MM-DD format", field=field, value=value)

    @staticmethod
    def decimal_value(value, field, default=None, minimum=Decimal('0')):
        """Money amounts, rounded half-up to 2 places"""
        if value is None or value == '':
            return default
        try:
            amount = Decimal(str(value))
        except (InvalidOperation, ValueError):
            raise InvalidValue("must be a number", field=field, value=value)
        if not amount.is_finite():
            raise InvalidValue("must be a number", field=field, value=value)
        if minimum is not None and amount < minimum:
            raise InvalidValue(f"must be at least {minimum}", field=field, value=value)
        return amount.quantize(TWO_PLACES, rounding=ROUND_HALF_UP)

    @staticmethod
    def int_value(value, field, default=None, minimum=None):
        if value is None or value == '':
            return default
        if isinstance(value, bool):
            raise InvalidValue("must be a whole number", field=field, value=value)
        try:
            number = int(value)
        except (TypeError, ValueError):
            raise InvalidValue("must be a whole number", field=field, value=value)
        if isinstance(value, float) and value != number:
            raise InvalidValue("must be a whole number", field=field, value=value)
        if minimum is not None and number < minimum:
            raise InvalidValue(f"must be at least {minimum}", field=field, value=value)
        return number

    @staticmethod
    def float_value(value, field, default=None, minimum=None, maximum=None):
        if value is None or value == '':
            return default
        try:
            number = float(value)
        except (TypeError, ValueError):
            raise InvalidValue("must be a number", field=field, value=value)
        if minimum is not None and number < minimum:
            raise InvalidValue(f"must be at least {minimum}", field=field, value=value)
        if maximum is not None and number > maximum:
            raise InvalidValue(f"must be at most {maximum}", field=field, value=value)
        return number

    @staticmethod
    def bool_value(value, default=False):
        if value is None or value == '':
            return default
        if isinstance(value, bool):
            return value
        return str(value).strip().lower() in ('1', 'true', 'yes', 'on')

    @staticmethod
    def date_window(start_date, end_date):
        """Validity windows may be open-ended but never inverted"""
        if start_date and end_date and end_date < start_date:
            raise InvalidValue("must not be before start_date", field='end_date',
                               start_date=start_date.isoformat(), end_date=end_date.isoformat())

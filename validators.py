"""
Input sanitizing and validation helpers.

Validators return None when the value is acceptable, otherwise a
human-readable error message that routes pass straight back to the client.
"""

import re
from decimal import Decimal, InvalidOperation

EMAIL_RE = re.compile(r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$')
PHONE_RE = re.compile(r'^(\+639|09)\d{9}$')
MAX_PRICE = Decimal('99999.99')
MAX_BALANCE = Decimal('999999.99')


def sanitize_string(value):
    if value is None:
        return ''
    value = re.sub(r'[<>{}\\]', '', str(value))
    return re.sub(r'\s+', ' ', value).strip()


def sanitize_email(value):
    return (value or '').strip().lower()


def sanitize_phone(value):
    return re.sub(r'[^\d+]', '', value or '')


def parse_price(value):
    """Parse a price from user input ("₱1,250.50", 45, "12.5"). Returns Decimal or None."""
    if value is None:
        return None
    if isinstance(value, (int, float, Decimal)):
        number = Decimal(str(value))
    else:
        cleaned = re.sub(r'[^\d.\-]', '', str(value))
        if not cleaned:
            return None
        try:
            number = Decimal(cleaned)
        except InvalidOperation:
            return None
    return number if number.is_finite() else None


def validate_email(value):
    if not value or not value.strip():
        return 'Email is required'
    if not EMAIL_RE.match(value.strip()):
        return 'Enter a valid email address'
    return None


def validate_password(value, min_length=6):
    if not value:
        return 'Password is required'
    if len(value) < min_length:
        return f'Password must be at least {min_length} characters'
    return None


def validate_strong_password(value):
    """Stricter rule used when changing a password"""
    error = validate_password(value, min_length=8)
    if error:
        return error
    if not re.search(r'[A-Z]', value):
        return 'Password must contain at least 1 uppercase letter'
    if not re.search(r'[a-z]', value):
        return 'Password must contain at least 1 lowercase letter'
    if not re.search(r'[0-9]', value):
        return 'Password must contain at least 1 number'
    return None


def validate_required(value, field_name):
    if value is None or not str(value).strip():
        return f'{field_name} is required'
    return None


def validate_phone(value):
    """Philippine mobile numbers: +639XXXXXXXXX or 09XXXXXXXXX. Empty is allowed."""
    if not value:
        return None
    if not PHONE_RE.match(sanitize_phone(value)):
        return 'Enter a valid mobile number (e.g. 09171234567)'
    return None


def validate_positive_number(value, field_name):
    number = parse_price(value)
    if number is None:
        return f'{field_name} must be a number'
    if number <= 0:
        return f'{field_name} must be greater than 0'
    return None


def validate_integer(value, field_name):
    if isinstance(value, bool):
        return f'{field_name} must be a whole number'
    try:
        int(str(value).strip())
    except (TypeError, ValueError):
        return f'{field_name} must be a whole number'
    return None


def _decimal_places(number):
    exponent = number.as_tuple().exponent
    return -exponent if exponent < 0 else 0


def validate_price(value):
    if value is None or str(value).strip() == '':
        return 'Price is required'
    price = parse_price(value)
    if price is None:
        return 'Price must be a number'
    if price < 0:
        return 'Price cannot be negative'
    if price > MAX_PRICE:
        return 'Price is too large'
    if _decimal_places(price.normalize()) > 2:
        return 'Price can have at most 2 decimal places'
    return None


def validate_balance(value):
    if value is None or str(value).strip() == '':
        return 'Balance is required'
    balance = parse_price(value)
    if balance is None:
        return 'Balance must be a number'
    if balance < 0:
        return 'Balance cannot be negative'
    if balance > MAX_BALANCE:
        return 'Balance is too large'
    if _decimal_places(balance.normalize()) > 2:
        return 'Balance can have at most 2 decimal places'
    return None


def validate_stock_quantity(value):
    """Stock may be empty (unlimited) or a non-negative whole number"""
    if value is None or str(value).strip() == '':
        return None
    error = validate_integer(value, 'Stock quantity')
    if error:
        return error
    if int(str(value).strip()) < 0:
        return 'Stock quantity cannot be negative'
    return None


def validate_length(value, field_name, min_length=None, max_length=None):
    length = len(value or '')
    if min_length is not None and length < min_length:
        return f'{field_name} must be at least {min_length} characters'
    if max_length is not None and length > max_length:
        return f'{field_name} must be at most {max_length} characters'
    return None


def validate_file_extension(filename, allowed_extensions):
    if not filename or '.' not in filename:
        return 'File has no extension'
    extension = filename.rsplit('.', 1)[1].lower()
    if extension not in allowed_extensions:
        return f"Unsupported file type .{extension} (allowed: {', '.join(sorted(allowed_extensions))})"
    return None


def first_error(*errors):
    """Return the first non-empty error from a list of validator results"""
    for error in errors:
        if error:
            return error
    return None

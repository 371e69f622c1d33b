"""
Phone number normalization.

Spreadsheet phone columns arrive in every shape ("(415) 555-0101",
"415.555.0101", "+44 20 7946 0958", numbers stored as floats). They are
reduced to an E.164-ish string; no validation against numbering plans
is attempted.
"""

import re

_NON_DIAL_RE = re.compile(r'[^\d+]')


def normalize_phone(raw: str | None) -> str | None:
    """
    Normalize a raw phone value.

    Rules, applied to the string with everything except digits and '+'
    removed:
    - no digits at all -> None
    - leading '+' -> '+' followed by the digits
    - 11 digits starting with 1 -> '+' + digits
    - 10 digits -> '+1' + digits
    - anything else -> '+' + digits

    Args:
        raw: Phone value as read from the sheet

    Returns:
        Normalized phone number, or None when there is nothing to keep
    """
    if not raw:
        return None

    cleaned = _NON_DIAL_RE.sub('', str(raw))
    digits = cleaned.replace('+', '')
    if not digits:
        return None

    if cleaned.startswith('+'):
        return f'+{digits}'
    if len(digits) == 11 and digits.startswith('1'):
        return f'+{digits}'
    if len(digits) == 10:
        return f'+1{digits}'
    return f'+{digits}'

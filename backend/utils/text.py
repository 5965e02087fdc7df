"""
Text helpers for values scraped from portal HTML.
"""
import re
import unicodedata
from typing import Optional, Tuple

_NON_DIGITS = re.compile(r'[^0-9]')
# Availability / decoration marks the portal prefixes to staff names
_DECORATION_PREFIX = re.compile(r'^[\s×○◯●◎△▲✕✖]+')
_WHITESPACE = re.compile(r'\s+')


def parse_int_digits(value: Optional[str]) -> int:
    """
    Parse an integer by dropping every non-digit character.

    '¥5,500' -> 5500, '90分' -> 90, '' / None / '－' -> 0
    """
    if not value:
        return 0
    # NFKC turns full-width digits into ASCII first
    digits = _NON_DIGITS.sub('', unicodedata.normalize('NFKC', value))
    return int(digits) if digits else 0


def clean_text(value: Optional[str]) -> str:
    """Trim and collapse internal whitespace runs to a single space."""
    if not value:
        return ''
    return _WHITESPACE.sub(' ', value).strip()


def normalize_person_name(name: Optional[str]) -> str:
    """
    Comparison key for staff names.

    Unicode NFKC (full-width -> half-width), leading decoration marks removed,
    all whitespace removed (including the ideographic space), case-folded.
    """
    if not name:
        return ''
    normalized = unicodedata.normalize('NFKC', name)
    normalized = _DECORATION_PREFIX.sub('', normalized)
    normalized = _WHITESPACE.sub('', normalized)
    return normalized.casefold()


def split_person_name(full_name: Optional[str]) -> Tuple[str, str]:
    """
    Split 'surname given-name' on any whitespace (half- or full-width).

    A single token is returned as the surname with an empty given name.
    """
    parts = (full_name or '').split()
    if not parts:
        return '', ''
    return parts[0], ' '.join(parts[1:])

"""
Backend utilities module.
"""
from .text import (
    parse_int_digits,
    clean_text,
    normalize_person_name,
    split_person_name,
)

__all__ = [
    'parse_int_digits',
    'clean_text',
    'normalize_person_name',
    'split_person_name',
]

"""
URL slug generation for published places.

Base slugs are deterministic ("{name}-{locality}"); collisions get a short
time/random suffix; after too many collisions an identifier-derived slug
is used instead.
"""

import random
import re
import string
import time
from typing import Optional

MAX_SLUG_ATTEMPTS = 10
SUFFIX_LENGTH = 8

_BASE36 = string.digits + string.ascii_lowercase
_WHITESPACE_RE = re.compile(r"\s+")
_DISALLOWED_RE = re.compile(r"[^a-z0-9가-힣-]")
_HYPHENS_RE = re.compile(r"-+")


def to_base36(number: int) -> str:
    if number == 0:
        return "0"
    digits = []
    while number:
        number, remainder = divmod(number, 36)
        digits.append(_BASE36[remainder])
    return "".join(reversed(digits))


def slugify(text: str) -> str:
    text = _WHITESPACE_RE.sub("-", text.strip().lower())
    text = _DISALLOWED_RE.sub("", text)
    return _HYPHENS_RE.sub("-", text).strip("-")


def generate_slug(name: str, locality: Optional[str] = None) -> str:
    """
    >>> generate_slug("Test Shop", "Euljiro-dong")
    'test-shop-euljiro-dong'
    """
    parts = [name]
    if locality:
        parts.append(locality)
    return slugify(" ".join(parts))


def unique_suffix() -> str:
    """8 chars: base36 milliseconds tail plus random base36 characters."""
    stamp = to_base36(int(time.time() * 1000))[-4:]
    noise = "".join(random.choices(_BASE36, k=SUFFIX_LENGTH - len(stamp)))
    return stamp + noise


def generate_unique_slug(base: str) -> str:
    return f"{base}-{unique_suffix()}" if base else unique_suffix()


def fallback_slug(place_id: str) -> str:
    """Unique by construction: place identifiers are unique."""
    return slugify(f"place-{place_id}")

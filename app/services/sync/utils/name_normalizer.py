"""Name normalization utilities for club, team and player matching.

Handles common variations between Twizzit and locally entered data:
- Accents: "Zoë Declercq" → "zoe declercq"
- Punctuation: "K.C. Antwerpen" → "kc antwerpen"
- Case: "KC ANTWERPEN" → "kc antwerpen"
- Extra spaces: "Jan  Peeters" → "jan peeters"
"""
import re
import unicodedata
from typing import Optional, Tuple

from rapidfuzz import fuzz

# Minimum WRatio score for a fuzzy label match
FUZZY_MATCH_THRESHOLD = 90


def normalize(name: str) -> str:
    """
    Normalize a name for comparison.

    Steps:
    1. Normalize unicode characters (accents)
    2. Convert to lowercase
    3. Remove punctuation (but keep letters and digits)
    4. Remove extra whitespace

    Examples:
        >>> normalize("K.C. Antwerpen")
        'kc antwerpen'
        >>> normalize("Zoë  Declercq")
        'zoe declercq'
    """
    if not name:
        return ""

    name = _normalize_unicode(name)
    name = name.lower()
    name = re.sub(r'[^\w\s]', '', name)
    return ' '.join(name.split())


def _normalize_unicode(name: str) -> str:
    """
    Remove accents and diacritics from unicode characters.

    Converts 'ë' → 'e', 'é' → 'e', 'ç' → 'c', etc.
    """
    normalized = unicodedata.normalize('NFD', name)
    return ''.join(
        c for c in normalized
        if unicodedata.category(c) != 'Mn'
    )


def are_names_equal(name1: str, name2: str, fuzzy: bool = False) -> bool:
    """
    Check if two names are equal after normalization.

    Args:
        name1: First name
        name2: Second name
        fuzzy: If True, also accept a fuzzy match scoring at least
               FUZZY_MATCH_THRESHOLD

    Returns:
        True if names match
    """
    norm1 = normalize(name1)
    norm2 = normalize(name2)

    if not norm1 or not norm2:
        return False

    if norm1 == norm2:
        return True

    if fuzzy:
        return fuzz.WRatio(norm1, norm2) >= FUZZY_MATCH_THRESHOLD

    return False


def split_display_name(name: Optional[str]) -> Optional[Tuple[str, str]]:
    """
    Split a combined display name into first and last name.

    The first whitespace-separated token is the first name; the remainder
    is the last name. Names with fewer than two tokens cannot be split.

    Examples:
        >>> split_display_name("Jan Van den Broeck")
        ('Jan', 'Van den Broeck')
        >>> split_display_name("Madonna") is None
        True
    """
    if not name:
        return None

    parts = name.split()
    if len(parts) < 2:
        return None

    return (parts[0], ' '.join(parts[1:]))

"""Season label normalization and matching.

Twizzit season labels are typed by hand, so "2025-2026", "2025 – 2026" and
"2025 -2026" all name the same season. Labels are compared after unifying
dash characters, dropping whitespace and case-folding.
"""
import re
from typing import Any, Optional

# Hyphen, non-breaking hyphen, figure dash, en dash, em dash, horizontal bar, minus
_DASHES = re.compile("[‐‑‒–—―−]")
_WHITESPACE = re.compile(r"\s+")


def normalize_season_label(label: Optional[str]) -> str:
    """
    Examples:
        >>> normalize_season_label("2025 – 2026")
        '2025-2026'
        >>> normalize_season_label(" Seizoen 2025-2026 ")
        'seizoen2025-2026'
    """
    if not label:
        return ""
    label = _DASHES.sub("-", str(label))
    label = _WHITESPACE.sub("", label)
    return label.casefold()


def season_labels_equal(a: Optional[str], b: Optional[str]) -> bool:
    norm_a = normalize_season_label(a)
    return bool(norm_a) and norm_a == normalize_season_label(b)


def season_matches(
    row_season_id: Any,
    row_season_label: Optional[str],
    wanted_season_id: Any = None,
    wanted_season_label: Optional[str] = None
) -> bool:
    """
    Does a row belong to the requested season?

    - No season requested: every row matches.
    - Both sides carry an id: ids decide.
    - Otherwise a requested label is compared against the row label.
    - A row whose season information cannot be compared is kept.
    """
    if wanted_season_id is None and not wanted_season_label:
        return True

    if wanted_season_id is not None and row_season_id is not None:
        return str(row_season_id) == str(wanted_season_id)

    if wanted_season_label and row_season_label:
        return season_labels_equal(row_season_label, wanted_season_label)

    return True

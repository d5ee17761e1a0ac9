"""Field extraction and row classification for Twizzit JSON payloads.

The Twizzit API is inconsistent about field naming: the same value shows up
as ``first-name``, ``first_name`` or ``firstName`` depending on endpoint and
API version, and roster endpoints return either bare membership rows or full
contact records.

Extraction is an ordered list of small functions, each returning a value or
None; ``first_present`` walks the list and stops at the first hit. Roster
rows go through ``classify_roster_row`` once, which returns one of three
explicit record types that callers dispatch on.
"""
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Callable, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from app.services.sync.utils.name_normalizer import split_display_name

Extractor = Callable[[Mapping], Optional[Any]]


# =============================================================================
# EXTRACTOR PRIMITIVES
# =============================================================================

def _clean(value: Any) -> Optional[Any]:
    """Treat None, empty strings and empty containers as missing."""
    if value is None:
        return None
    if isinstance(value, str):
        value = value.strip()
        return value or None
    if isinstance(value, (list, tuple, dict)) and not value:
        return None
    return value


def key(name: str) -> Extractor:
    """Extract a top-level field."""
    def extract(row: Mapping) -> Optional[Any]:
        return _clean(row.get(name))
    return extract


def nested(parent: str, name: str) -> Extractor:
    """Extract ``row[parent][name]`` when ``row[parent]`` is an object."""
    def extract(row: Mapping) -> Optional[Any]:
        inner = row.get(parent)
        if isinstance(inner, Mapping):
            return _clean(inner.get(name))
        return None
    return extract


def first_item(name: str, item_key: Optional[str] = None) -> Extractor:
    """Extract the first element of a list field (optionally a key of it)."""
    def extract(row: Mapping) -> Optional[Any]:
        values = row.get(name)
        if not isinstance(values, (list, tuple)) or not values:
            return None
        item = values[0]
        if item_key is not None:
            return _clean(item.get(item_key)) if isinstance(item, Mapping) else None
        return _clean(item)
    return extract


def scalar_key(name: str) -> Extractor:
    """Like ``key`` but ignores objects and lists (e.g. ``season`` as a label)."""
    def extract(row: Mapping) -> Optional[Any]:
        value = row.get(name)
        if isinstance(value, (Mapping, list, tuple)):
            return None
        return _clean(value)
    return extract


def first_present(row: Mapping, extractors: Sequence[Extractor]) -> Optional[Any]:
    """Run extractors in priority order and return the first non-missing value."""
    if not isinstance(row, Mapping):
        return None
    for extract in extractors:
        value = extract(row)
        if value is not None:
            return value
    return None


def as_id(value: Any) -> Optional[str]:
    """Normalize ids to strings ("123", 123 and 123.0 compare equal)."""
    if value is None:
        return None
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    text = str(value).strip()
    return text or None


# =============================================================================
# FIELD PRIORITIES
# =============================================================================

ORGANIZATION_ID = (key("organization-id"), key("organization_id"), key("organizationId"), key("id"))
ORGANIZATION_NAME = (
    key("name"), key("organization-name"), key("organization_name"), key("organizationName"),
)

GROUP_ID = (key("id"), key("group-id"), key("group_id"), key("groupId"))
GROUP_NAME = (key("name"), key("group-name"), key("group_name"), key("groupName"), key("title"))
GROUP_ORGANIZATION_ID = (
    key("organization-id"), key("organization_id"), key("organizationId"),
    nested("organization", "id"),
)
GROUP_AGE_GROUP = (
    key("age-group"), key("age_group"), key("ageGroup"),
    scalar_key("category"), nested("group-category", "name"), nested("category", "name"),
)
GROUP_GENDER = (key("gender"), key("sex"))

# Explicit reference fields: present on membership rows, absent on contacts
CONTACT_REF = (key("contact-id"), key("contact_id"), key("contactId"))
MEMBERSHIP_GROUP_REF = (key("group-id"), key("group_id"), key("groupId"))

CONTACT_ID = (key("id"),) + CONTACT_REF
FIRST_NAME = (key("first-name"), key("first_name"), key("firstName"), key("firstname"))
LAST_NAME = (key("last-name"), key("last_name"), key("lastName"), key("lastname"))
DISPLAY_NAME = (
    key("name"), key("full-name"), key("full_name"), key("fullName"),
    key("display-name"), key("displayName"),
)
EMAIL = (
    key("email"), key("e-mail"), key("email-address"), key("emailAddress"),
    first_item("emails"), first_item("emails", "email"),
)
BIRTH_DATE = (
    key("date-of-birth"), key("date_of_birth"), key("dateOfBirth"),
    key("birth-date"), key("birth_date"), key("birthDate"), key("birthdate"),
)
GENDER = (key("gender"), key("sex"))
JERSEY_NUMBER = (
    key("shirt-number"), key("shirt_number"), key("jersey-number"), key("jersey_number"),
    key("jerseyNumber"), key("number"),
)

SEASON_ID = (
    key("season-id"), key("season_id"), key("seasonId"), nested("season", "id"),
)
SEASON_LABEL = (
    key("season-name"), key("season_name"), key("seasonName"),
    scalar_key("season"), nested("season", "name"),
)

SEASON_ROW_ID = (key("id"), key("season-id"), key("season_id"), key("seasonId"))
SEASON_ROW_NAME = (key("name"), key("season-name"), key("season_name"), key("label"), key("title"))

NAME_FIELDS = FIRST_NAME + LAST_NAME + DISPLAY_NAME


# =============================================================================
# VALUE NORMALIZATION
# =============================================================================

_MALE = {"m", "male", "man", "men", "h", "homme", "heer", "jongen", "boy", "1"}
_FEMALE = {"f", "female", "woman", "women", "v", "vrouw", "dame", "meisje", "girl", "2"}
_MIXED = {"mixed", "mix", "gemengd", "mixte", "x/mixed", "coed"}
_OTHER = {"x", "other", "non-binary", "nonbinary", "3"}

GENDERS = ("male", "female", "other", "unknown")
TEAM_GENDERS = ("male", "female", "mixed")


def normalize_gender(value: Any) -> str:
    """
    Map letter, word and numeric encodings onto male/female/other/unknown.

    Unrecognized values become "unknown" rather than an error.

    Examples:
        >>> normalize_gender("V")
        'female'
        >>> normalize_gender(1)
        'male'
        >>> normalize_gender("?")
        'unknown'
    """
    if value is None:
        return "unknown"
    if isinstance(value, bool):
        return "unknown"
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    text = str(value).strip().lower()
    if text in _MALE:
        return "male"
    if text in _FEMALE:
        return "female"
    if text in _OTHER:
        return "other"
    return "unknown"


def normalize_team_gender(value: Any) -> Optional[str]:
    """Team gender: male, female, mixed or None."""
    if value is None:
        return None
    text = str(value).strip().lower()
    if text in _MIXED:
        return "mixed"
    gender = normalize_gender(value)
    return gender if gender in ("male", "female") else None


_DATE_FORMATS = ("%Y-%m-%d", "%d/%m/%Y", "%d-%m-%Y", "%Y/%m/%d")


def parse_date(value: Any) -> Optional[date]:
    """Parse the date formats Twizzit emits; None if unparseable."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    if not text:
        return None
    # ISO timestamps: keep the date part
    if "T" in text:
        text = text.split("T", 1)[0]
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    return None


def parse_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return None


# =============================================================================
# RECORD TYPES
# =============================================================================

@dataclass(frozen=True)
class OrganizationRecord:
    organization_id: str
    name: Optional[str]
    raw: Mapping = field(repr=False, compare=False, default_factory=dict)


@dataclass(frozen=True)
class SeasonRecord:
    season_id: str
    name: Optional[str]


@dataclass(frozen=True)
class GroupRecord:
    group_id: Optional[str]
    name: Optional[str]
    organization_id: Optional[str]
    season_id: Optional[str]
    season_label: Optional[str]
    age_group: Optional[str]
    gender: Optional[str]
    raw: Mapping = field(repr=False, compare=False, default_factory=dict)


@dataclass(frozen=True)
class ContactRecord:
    """A full person record (has name fields)."""

    contact_id: Optional[str]
    first_name: Optional[str]
    last_name: Optional[str]
    email: Optional[str]
    birth_date: Optional[date]
    gender: str
    jersey_number: Optional[int]
    season_id: Optional[str]
    season_label: Optional[str]
    raw: Mapping = field(repr=False, compare=False, default_factory=dict)

    @property
    def display_name(self) -> str:
        return " ".join(p for p in (self.first_name, self.last_name) if p) or (self.contact_id or "")


@dataclass(frozen=True)
class MembershipRow:
    """A group membership that only references a contact by id."""

    contact_id: str
    group_id: Optional[str]
    season_id: Optional[str]
    season_label: Optional[str]
    raw: Mapping = field(repr=False, compare=False, default_factory=dict)


@dataclass(frozen=True)
class UnclassifiedRow:
    reason: str
    raw: Any = field(repr=False, compare=False, default=None)


RosterRow = Union[ContactRecord, MembershipRow, UnclassifiedRow]


# =============================================================================
# EXTRACTION
# =============================================================================

def extract_person_name(row: Mapping) -> Optional[Tuple[str, str]]:
    """
    Derive (first_name, last_name) from split fields or one display name.

    Returns None when no complete first + last name can be derived.
    """
    first = first_present(row, FIRST_NAME)
    last = first_present(row, LAST_NAME)
    if first and last:
        return (str(first), str(last))

    display = first_present(row, DISPLAY_NAME)
    if display:
        return split_display_name(str(display))

    return None


def to_organization(row: Mapping) -> Optional[OrganizationRecord]:
    organization_id = as_id(first_present(row, ORGANIZATION_ID))
    if organization_id is None:
        return None
    name = first_present(row, ORGANIZATION_NAME)
    return OrganizationRecord(organization_id=organization_id, name=name, raw=row)


def to_season(row: Mapping) -> Optional[SeasonRecord]:
    season_id = as_id(first_present(row, SEASON_ROW_ID))
    if season_id is None:
        return None
    return SeasonRecord(season_id=season_id, name=_as_label(first_present(row, SEASON_ROW_NAME)))


def to_group(row: Mapping) -> GroupRecord:
    return GroupRecord(
        group_id=as_id(first_present(row, GROUP_ID)),
        name=first_present(row, GROUP_NAME),
        organization_id=as_id(first_present(row, GROUP_ORGANIZATION_ID)),
        season_id=as_id(first_present(row, SEASON_ID)),
        season_label=_as_label(first_present(row, SEASON_LABEL)),
        age_group=_as_label(first_present(row, GROUP_AGE_GROUP)),
        gender=normalize_team_gender(first_present(row, GROUP_GENDER)),
        raw=row,
    )


def to_contact(row: Mapping, season_from: Optional[Mapping] = None) -> ContactRecord:
    """Build a ContactRecord; season fields fall back to ``season_from``."""
    name = extract_person_name(row)
    season_source = season_from if season_from is not None else row
    return ContactRecord(
        contact_id=as_id(first_present(row, CONTACT_ID)),
        first_name=name[0] if name else None,
        last_name=name[1] if name else None,
        email=_as_label(first_present(row, EMAIL)),
        birth_date=parse_date(first_present(row, BIRTH_DATE)),
        gender=normalize_gender(first_present(row, GENDER)),
        jersey_number=parse_int(first_present(row, JERSEY_NUMBER)),
        season_id=as_id(first_present(row, SEASON_ID) or first_present(season_source, SEASON_ID)),
        season_label=_as_label(
            first_present(row, SEASON_LABEL) or first_present(season_source, SEASON_LABEL)
        ),
        raw=row,
    )


def classify_roster_row(row: Any) -> RosterRow:
    """
    Decide what a group-contacts row is, from fixed discriminating fields.

    - name fields present (top level or in an embedded ``contact`` object)
      → ContactRecord
    - a contact reference (contact-id / contactId / contact_id) and no names
      → MembershipRow
    - anything else → UnclassifiedRow
    """
    if not isinstance(row, Mapping):
        return UnclassifiedRow(reason="row is not an object", raw=row)

    embedded = row.get("contact")
    if isinstance(embedded, Mapping) and first_present(embedded, NAME_FIELDS) is not None:
        record = to_contact(embedded, season_from=row)
        if record.contact_id is None:
            record = _with_contact_id(record, as_id(first_present(row, CONTACT_REF)))
        return record

    if first_present(row, NAME_FIELDS) is not None:
        record = to_contact(row)
        ref = as_id(first_present(row, CONTACT_REF))
        if ref is not None and record.contact_id != ref:
            # membership row that also carries names: the contact id is the reference
            record = _with_contact_id(record, ref)
        return record

    contact_ref = as_id(first_present(row, CONTACT_REF))
    if contact_ref is not None:
        return MembershipRow(
            contact_id=contact_ref,
            group_id=as_id(first_present(row, MEMBERSHIP_GROUP_REF)),
            season_id=as_id(first_present(row, SEASON_ID)),
            season_label=_as_label(first_present(row, SEASON_LABEL)),
            raw=row,
        )

    return UnclassifiedRow(reason="row has neither name fields nor a contact reference", raw=row)


def extract_rows(payload: Any, keys: Iterable[str] = ("data", "items", "results")) -> List[Any]:
    """
    Pull the list of rows out of a response body.

    Accepts a bare array or an object wrapping it under one of ``keys``.
    """
    if isinstance(payload, list):
        return payload
    if isinstance(payload, Mapping):
        for name in keys:
            value = payload.get(name)
            if isinstance(value, list):
                return value
    return []


def _as_label(value: Any) -> Optional[str]:
    if value is None:
        return None
    return str(value).strip() or None


def _with_contact_id(record: ContactRecord, contact_id: Optional[str]) -> ContactRecord:
    if contact_id is None:
        return record
    return ContactRecord(
        contact_id=contact_id,
        first_name=record.first_name,
        last_name=record.last_name,
        email=record.email,
        birth_date=record.birth_date,
        gender=record.gender,
        jersey_number=record.jersey_number,
        season_id=record.season_id,
        season_label=record.season_label,
        raw=record.raw,
    )

"""
Input models for the sync entry points.

Validated before any database write or external call; pydantic failures are
re-raised as the domain ``ValidationError`` by ``parse_input``.
"""
from typing import Any, Optional, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from app.core.exceptions import ValidationError
from app.models import CADENCES

M = TypeVar("M", bound=BaseModel)

ExternalId = Optional[str]


def _coerce_id(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValueError("must be an id, not a boolean")
    text = str(value).strip()
    if not text:
        return None
    return text


class _ScopeOptions(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    group_id: ExternalId = None
    season_id: ExternalId = None
    organization_id: ExternalId = None
    create_missing: bool = True

    @field_validator("group_id", "season_id", "organization_id", mode="before")
    @classmethod
    def _normalize_ids(cls, value):
        return _coerce_id(value)


class TeamSyncOptions(_ScopeOptions):
    """Options for ``sync_teams`` / ``preview_teams``."""


class PlayerSyncOptions(_ScopeOptions):
    """Options for ``sync_players`` / ``preview_players``."""


class HistoryQuery(BaseModel):
    model_config = ConfigDict(extra="forbid")

    limit: int = Field(default=50, ge=1, le=100)
    offset: int = Field(default=0, ge=0)


class SyncConfigUpdate(BaseModel):
    """Partial update of a sync configuration; unset fields are left alone."""

    model_config = ConfigDict(extra="forbid")

    auto_sync_enabled: Optional[bool] = None
    frequency: Optional[str] = None
    sync_teams: Optional[bool] = None
    sync_players: Optional[bool] = None

    @field_validator("frequency")
    @classmethod
    def _known_cadence(cls, value):
        if value is not None and value not in CADENCES:
            raise ValueError(f"frequency must be one of {', '.join(CADENCES)}")
        return value


class CredentialInput(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    organization_name: str = Field(min_length=1, max_length=255)
    username: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, repr=False)
    endpoint: Optional[str] = None

    @field_validator("endpoint")
    @classmethod
    def _http_endpoint(cls, value):
        if value is None or value == "":
            return None
        if not value.startswith(("http://", "https://")):
            raise ValueError("endpoint must be an http(s) URL")
        return value.rstrip("/")


def parse_input(model: Type[M], data: Any = None, **values) -> M:
    """
    Build ``model`` from a model instance, a mapping or keyword values.

    Raises:
        ValidationError: Input does not validate
    """
    if isinstance(data, model):
        return data
    if isinstance(data, BaseModel):
        data = data.model_dump(exclude_unset=True)
    payload = dict(data or {})
    payload.update(values)
    try:
        return model.model_validate(payload)
    except PydanticValidationError as e:
        raise ValidationError.from_pydantic(e) from e

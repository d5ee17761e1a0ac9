"""
Twizzit federation API client.

Requests go through four layers, outermost first:

1. Organization scoping: an unscoped first attempt, then the default
   organization, then every other organization the account can see.
2. Parameter normalization: historical filter spellings are rewritten to
   the canonical ``*-ids[]`` array parameters.
3. Pagination: ``limit``/``offset`` endpoints are walked until a short page.
4. Retry: one re-authentication on a rejected token, exponential backoff on
   5xx/transport errors, and no retry at all on rate limits.

All calls to the API are sequential; the account quota is monthly and the
API does not document concurrency limits.

Usage:
    client = TwizzitClient(endpoint, username, password, organization_label="KC Antwerpen")
    try:
        groups = await client.get_groups(season_id="42")
    finally:
        await client.close()
"""
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, TypeVar

import httpx
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from app.core.config import settings
from app.core.exceptions import (
    AccessDeniedForOrganizationError,
    AuthenticationError,
    NotFoundError,
    RateLimitError,
    TransientServerError,
    TwizzitApiError,
)
from app.core.logging import get_logger
from app.services.core.token_manager import TokenCache, TokenManager
from app.services.sync.utils.extractors import (
    CONTACT_ID,
    GROUP_ID,
    ORGANIZATION_ID,
    ORGANIZATION_NAME,
    as_id,
    extract_rows,
    first_present,
)
from app.services.sync.utils.name_normalizer import are_names_equal

logger = get_logger(__name__)

T = TypeVar("T")

API_PREFIX = "/v2/api"
ORGANIZATIONS_PATH = f"{API_PREFIX}/organizations"
SEASONS_PATH = f"{API_PREFIX}/seasons"
GROUPS_PATH = f"{API_PREFIX}/groups"
GROUP_CONTACTS_PATH = f"{API_PREFIX}/group-contacts"
CONTACTS_PATH = f"{API_PREFIX}/contacts"
GROUP_TYPES_PATH = f"{API_PREFIX}/group-types"
GROUP_CATEGORIES_PATH = f"{API_PREFIX}/group-categories"
CONTACT_FUNCTIONS_PATH = f"{API_PREFIX}/contact-functions"

ORGANIZATION_PARAM = "organization-ids[]"
SEASON_PARAM = "season-ids[]"
GROUP_PARAM = "group-ids[]"
CONTACT_PARAM = "contact-ids[]"
MEMBERSHIP_SEASON_PARAM = "membership-season-ids[]"

# Canonical array parameter -> spellings seen across API versions
PARAM_ALIASES: Dict[str, Sequence[str]] = {
    ORGANIZATION_PARAM: (
        "organization-ids", "organization_id", "organization_id[]", "organization_ids",
        "organization_ids[]", "organizations[]", "organisation_id", "organizationId",
        "organization",
    ),
    SEASON_PARAM: (
        "season_ids[]", "season-ids", "season_ids", "season-id", "season_id", "seasonId",
    ),
    GROUP_PARAM: (
        "group-ids", "group_ids", "group_ids[]", "group-id", "group_id", "groupId",
    ),
    CONTACT_PARAM: (
        "contact-ids", "contact_ids", "contact_ids[]", "contact-id", "contact_id", "contactId",
    ),
    MEMBERSHIP_SEASON_PARAM: (
        "membership-season-ids", "membership_season_ids", "membership_season_ids[]",
        "membership-season-id", "membership_season_id",
    ),
}

# Safety stop for endpoints that ignore limit/offset
MAX_PAGES = 200

_ACCESS_DENIED = re.compile(r"no access|access denied|not allowed|forbidden|permission", re.I)
_ORGANIZATION = re.compile(r"organi[sz]ation", re.I)


# =============================================================================
# PARAMETER NORMALIZATION
# =============================================================================

def _as_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, (list, tuple, set)):
        items = list(value)
    elif isinstance(value, str):
        items = value.split(",")
    else:
        items = [value]
    result = []
    for item in items:
        text = as_id(item)
        if text is not None and text not in result:
            result.append(text)
    return result


def normalize_params(params: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """
    Rewrite list filters to their canonical ``*-ids[]`` form.

    Scalars, comma-separated strings and lists are all accepted; values
    become lists of strings. ``None`` values are dropped.

    Examples:
        >>> normalize_params({"organization_id": 7, "season-ids": "1,2"})
        {'organization-ids[]': ['7'], 'season-ids[]': ['1', '2']}
    """
    normalized: Dict[str, Any] = {}
    lookup = {
        alias: canonical
        for canonical, aliases in PARAM_ALIASES.items()
        for alias in (canonical,) + tuple(aliases)
    }
    for name, value in (params or {}).items():
        if value is None:
            continue
        canonical = lookup.get(name)
        if canonical is None:
            normalized[name] = value
            continue
        values = normalized.setdefault(canonical, [])
        for item in _as_list(value):
            if item not in values:
                values.append(item)

    return {k: v for k, v in normalized.items() if v != []}


def _chunks(items: Sequence[str], size: int) -> Iterable[List[str]]:
    for start in range(0, len(items), size):
        yield list(items[start:start + size])


# =============================================================================
# RETRY AND ORGANIZATION PROBING
# =============================================================================

async def call_with_retry(
    request: Callable[[], Awaitable[T]],
    max_attempts: Optional[int] = None,
    wait=None
) -> T:
    """
    Run ``request`` with exponential backoff on TransientServerError.

    Every other error (rate limits included) propagates on the first attempt.

    Args:
        request: Zero-argument coroutine function performing one attempt
        max_attempts: Total attempts (default TWIZZIT_MAX_ATTEMPTS)
        wait: tenacity wait strategy (default: base delay doubling per attempt)
    """
    retrying = AsyncRetrying(
        stop=stop_after_attempt(max_attempts or settings.TWIZZIT_MAX_ATTEMPTS),
        wait=wait if wait is not None else wait_exponential(
            multiplier=settings.TWIZZIT_RETRY_BASE_DELAY
        ),
        retry=retry_if_exception_type(TransientServerError),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    async for attempt in retrying:
        with attempt:
            result = await request()
    return result


@dataclass(frozen=True)
class ProbeResult:
    """Outcome of an organization probe: which candidate answered, and with what."""

    organization_id: str
    value: Any
    attempts: List[str] = field(default_factory=list)


async def probe_organizations(
    candidates: Sequence[str],
    fetch: Callable[[str], Awaitable[T]]
) -> ProbeResult:
    """
    Try ``fetch`` with each organization id in order; first success wins.

    Access-denied and generic client errors move on to the next candidate.
    Not-found, rate-limit, authentication and server errors stop the probe.

    Raises:
        AccessDeniedForOrganizationError: No candidate succeeded
    """
    attempts: List[str] = []
    last_error: Optional[TwizzitApiError] = None

    for organization_id in candidates:
        attempts.append(organization_id)
        try:
            value = await fetch(organization_id)
        except (NotFoundError, RateLimitError, AuthenticationError, TransientServerError):
            raise
        except TwizzitApiError as e:
            if not e.is_client_error:
                raise
            logger.info(
                "Organization rejected request, trying next",
                extra={"organization_id": organization_id, "upstream_status": e.upstream_status}
            )
            last_error = e
            continue
        return ProbeResult(organization_id=organization_id, value=value, attempts=attempts)

    if isinstance(last_error, AccessDeniedForOrganizationError):
        raise last_error
    raise AccessDeniedForOrganizationError(
        "No accessible organization for this request",
        status_code=last_error.upstream_status if last_error else None,
        body=last_error.upstream_body if last_error else None,
        attempted=attempts,
        cause=last_error,
    )


# =============================================================================
# CLIENT
# =============================================================================

class TwizzitClient:
    """
    Async client for the Twizzit v2 API, bound to one credential.

    Owns its ``httpx.AsyncClient`` unless one is injected; call ``close()``
    (or use ``async with``) when done.
    """

    def __init__(
        self,
        endpoint: str,
        username: str,
        password: str,
        organization_label: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        token_cache: Optional[TokenCache] = None,
        max_attempts: Optional[int] = None,
        retry_wait=None,
        default_organization_id: Optional[str] = None,
        timeout: Optional[float] = None
    ):
        """
        Args:
            endpoint: API base URL
            username: API username
            password: Decrypted API password
            organization_label: Organization name stored with the credential,
                                used to pick the default organization
            http_client: Injected client (not closed by ``close()``)
            token_cache: Token cache; defaults to the process-wide cache
            max_attempts: Attempts for transient failures
            retry_wait: tenacity wait strategy for transient failures
            default_organization_id: Known default organization, skips discovery
            timeout: Per-request timeout in seconds
        """
        self.endpoint = endpoint.rstrip("/")
        self.username = username
        self.organization_label = organization_label
        self.max_attempts = max_attempts or settings.TWIZZIT_MAX_ATTEMPTS
        self.retry_wait = retry_wait
        self.timeout = timeout or settings.TWIZZIT_TIMEOUT
        self._password = password
        self._token_cache = token_cache
        self._client = http_client
        self._owns_client = http_client is None
        self._token_manager: Optional[TokenManager] = None
        self._default_organization_id = as_id(default_organization_id)
        self._organizations: Optional[List[Dict]] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout),
                limits=httpx.Limits(max_keepalive_connections=5, max_connections=10),
                headers={"Accept": "application/json"},
            )
        return self._client

    async def _get_token_manager(self) -> TokenManager:
        if self._token_manager is None:
            self._token_manager = TokenManager(
                self.endpoint,
                self.username,
                self._password,
                await self._get_client(),
                cache=self._token_cache,
            )
        return self._token_manager

    async def close(self):
        """Close the HTTP client if this instance created it."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
            self._token_manager = None

    async def __aenter__(self) -> "TwizzitClient":
        return self

    async def __aexit__(self, *exc_info):
        await self.close()

    @property
    def default_organization_id(self) -> Optional[str]:
        return self._default_organization_id

    # ========================================================================
    # Transport
    # ========================================================================

    async def authenticate(self) -> str:
        """Force a token check (logs in if needed)."""
        manager = await self._get_token_manager()
        return await manager.ensure_authenticated()

    async def _send(self, path: str, params: Mapping[str, Any], token: str) -> Any:
        """One GET attempt; maps failures onto the error taxonomy."""
        client = await self._get_client()
        try:
            response = await client.get(
                f"{self.endpoint}{path}",
                params=params,
                headers={"Authorization": f"Bearer {token}", "Accept": "application/json"},
            )
        except httpx.TimeoutException as e:
            raise TransientServerError(f"Twizzit request timed out: {path}", cause=e) from e
        except httpx.RequestError as e:
            raise TransientServerError(f"Twizzit request failed: {path}: {e}", cause=e) from e

        if response.status_code >= 400:
            raise self._classify(response, path, params)

        try:
            return response.json()
        except ValueError as e:
            raise TwizzitApiError(
                f"Twizzit returned invalid JSON for {path}",
                status_code=response.status_code,
                body=response.text[:500],
                cause=e,
            ) from e

    @staticmethod
    def _classify(response: httpx.Response, path: str, params: Mapping[str, Any]) -> TwizzitApiError:
        status = response.status_code
        try:
            body = response.json()
        except ValueError:
            body = response.text or None
        message = _error_message(body)

        if status == 401:
            return AuthenticationError(
                "Access token is missing or invalid", status_code=status, body=body
            )
        if status == 429:
            return RateLimitError(
                message or "Monthly API call limit exceeded", status_code=status, body=body
            )
        if status == 404:
            return NotFoundError(
                message or f"Twizzit resource not found: {path}", status_code=status, body=body
            )
        if status >= 500:
            return TransientServerError(
                f"Twizzit server error ({status}) for {path}", status_code=status, body=body
            )

        text = message or (body if isinstance(body, str) else "")
        scoped = ORGANIZATION_PARAM in params
        if _ACCESS_DENIED.search(text or "") and (scoped or _ORGANIZATION.search(text or "")):
            return AccessDeniedForOrganizationError(
                text or "Access denied for the specified organization",
                status_code=status,
                body=body,
            )
        return TwizzitApiError(
            f"Twizzit API error ({status}) for {path}" + (f": {message}" if message else ""),
            status_code=status,
            body=body,
        )

    async def _authorized_get(self, path: str, params: Mapping[str, Any]) -> Any:
        """GET with the bearer token; a rejected token is refreshed exactly once."""
        manager = await self._get_token_manager()
        token = await manager.ensure_authenticated()
        try:
            return await self._send(path, params, token)
        except AuthenticationError:
            logger.info("Twizzit token rejected, re-authenticating", extra={"path": path})
            manager.invalidate()
            token = await manager.ensure_authenticated()
            return await self._send(path, params, token)

    async def request(self, path: str, params: Optional[Mapping[str, Any]] = None) -> Any:
        """Single GET with normalization and retry, no organization fallback."""
        normalized = normalize_params(params)
        return await call_with_retry(
            lambda: self._authorized_get(path, normalized),
            max_attempts=self.max_attempts,
            wait=self.retry_wait,
        )

    async def get_all_pages(
        self,
        path: str,
        params: Optional[Mapping[str, Any]] = None,
        page_size: int = 100
    ) -> List[Any]:
        """Walk ``limit``/``offset`` pages until one comes back short."""
        rows: List[Any] = []
        offset = 0
        for _ in range(MAX_PAGES):
            page_params = dict(params or {})
            page_params.update({"limit": page_size, "offset": offset})
            page = extract_rows(await self.request(path, page_params))
            rows.extend(page)
            if len(page) < page_size:
                return rows
            offset += page_size

        logger.warning(
            "Pagination stopped at page cap", extra={"path": path, "max_pages": MAX_PAGES}
        )
        return rows

    # ========================================================================
    # Organization scoping
    # ========================================================================

    async def _fetch_organizations(self) -> List[Dict]:
        if self._organizations is None:
            payload = await self.request(ORGANIZATIONS_PATH)
            self._organizations = [
                row for row in extract_rows(payload, ("organizations", "data", "items"))
                if isinstance(row, Mapping)
            ]
        return self._organizations

    async def _organization_ids(self) -> List[str]:
        ids = []
        for row in await self._fetch_organizations():
            organization_id = as_id(first_present(row, ORGANIZATION_ID))
            if organization_id and organization_id not in ids:
                ids.append(organization_id)
        return ids

    async def resolve_default_organization_id(self) -> Optional[str]:
        """
        Organization to scope requests to when an unscoped call is refused.

        Exact (normalized) label match, then fuzzy label match, then the first
        organization listed. Cached on the client.
        """
        if self._default_organization_id is not None:
            return self._default_organization_id

        organizations = await self._fetch_organizations()
        if not organizations:
            return None

        chosen = None
        if self.organization_label:
            for fuzzy in (False, True):
                for row in organizations:
                    name = first_present(row, ORGANIZATION_NAME)
                    if name and are_names_equal(str(name), self.organization_label, fuzzy=fuzzy):
                        chosen = row
                        break
                if chosen is not None:
                    break

        if chosen is None:
            chosen = organizations[0]
            logger.info(
                "No organization matches credential label, using first listed",
                extra={"organization_label": self.organization_label}
            )

        self._default_organization_id = as_id(first_present(chosen, ORGANIZATION_ID))
        return self._default_organization_id

    async def with_organization_scope(
        self,
        call: Callable[[Dict[str, Any]], Awaitable[T]],
        params: Optional[Mapping[str, Any]] = None,
        organization_id: Optional[Any] = None
    ) -> T:
        """
        Run ``call(params)`` with the organization fallback chain.

        ``call`` receives normalized params and performs the actual fetch
        (single request or page walk).
        """
        normalized = normalize_params(params)
        if organization_id is not None:
            normalized[ORGANIZATION_PARAM] = _as_list(organization_id)
        if normalized.get(ORGANIZATION_PARAM):
            return await call(normalized)

        try:
            return await call(normalized)
        except (NotFoundError, RateLimitError, AuthenticationError, TransientServerError):
            raise
        except TwizzitApiError as e:
            if not e.is_client_error:
                raise
            unscoped_error = e

        try:
            default_id = await self.resolve_default_organization_id()
        except TwizzitApiError as e:
            if isinstance(e, (RateLimitError, AuthenticationError)):
                raise
            raise unscoped_error
        if default_id is None:
            raise unscoped_error

        logger.info(
            "Unscoped request refused, retrying with default organization",
            extra={"organization_id": default_id, "upstream_status": unscoped_error.upstream_status}
        )
        try:
            return await call({**normalized, ORGANIZATION_PARAM: [default_id]})
        except AccessDeniedForOrganizationError:
            candidates = [i for i in await self._organization_ids() if i != default_id]
            if not candidates:
                raise

        result = await probe_organizations(
            candidates,
            lambda org_id: call({**normalized, ORGANIZATION_PARAM: [org_id]})
        )
        logger.info(
            "Organization probe succeeded",
            extra={"organization_id": result.organization_id, "attempts": len(result.attempts)}
        )
        self._default_organization_id = result.organization_id
        return result.value

    async def _scoped_request(
        self,
        path: str,
        params: Optional[Mapping[str, Any]] = None,
        organization_id: Optional[Any] = None
    ) -> Any:
        return await self.with_organization_scope(
            lambda p: self.request(path, p), params, organization_id
        )

    async def _scoped_pages(
        self,
        path: str,
        page_size: int,
        params: Optional[Mapping[str, Any]] = None,
        organization_id: Optional[Any] = None
    ) -> List[Any]:
        return await self.with_organization_scope(
            lambda p: self.get_all_pages(path, p, page_size), params, organization_id
        )

    # ========================================================================
    # Endpoints
    # ========================================================================

    async def get_organizations(self) -> List[Dict]:
        """Organizations the account can access."""
        return list(await self._fetch_organizations())

    async def get_seasons(self, organization_id: Optional[Any] = None) -> List[Dict]:
        return extract_rows(await self._scoped_request(SEASONS_PATH, None, organization_id))

    async def get_groups(
        self,
        organization_id: Optional[Any] = None,
        season_id: Optional[Any] = None,
        **filters
    ) -> List[Dict]:
        params = dict(filters)
        if season_id is not None:
            params[SEASON_PARAM] = season_id
        return await self._scoped_pages(
            GROUPS_PATH, settings.TWIZZIT_GROUPS_PAGE_SIZE, params, organization_id
        )

    async def get_groups_by_ids(
        self,
        group_ids: Iterable[Any],
        organization_id: Optional[Any] = None
    ) -> List[Dict]:
        ids = _as_list(list(group_ids))
        if not ids:
            return []
        return await self._scoped_pages(
            GROUPS_PATH, settings.TWIZZIT_GROUPS_PAGE_SIZE, {GROUP_PARAM: ids}, organization_id
        )

    async def get_group(
        self,
        group_id: Any,
        season_id: Optional[Any] = None,
        organization_id: Optional[Any] = None
    ) -> Dict:
        """
        Resolve one group: season-scoped listing first, direct id lookup second.

        Raises:
            NotFoundError: Neither path knows the group
        """
        wanted = as_id(group_id)
        if season_id is not None:
            for row in await self.get_groups(organization_id=organization_id, season_id=season_id):
                if as_id(first_present(row, GROUP_ID)) == wanted:
                    return row

        for row in await self.get_groups_by_ids([wanted], organization_id=organization_id):
            if as_id(first_present(row, GROUP_ID)) == wanted:
                return row

        raise NotFoundError(f"Twizzit group not found: {wanted}", group_id=wanted)

    async def get_group_contacts(
        self,
        group_ids: Iterable[Any],
        organization_id: Optional[Any] = None,
        season_id: Optional[Any] = None
    ) -> List[Dict]:
        """Membership rows for the given groups (shape varies, see classify_roster_row)."""
        params: Dict[str, Any] = {GROUP_PARAM: _as_list(list(group_ids))}
        if season_id is not None:
            params[SEASON_PARAM] = season_id
        return extract_rows(await self._scoped_request(GROUP_CONTACTS_PATH, params, organization_id))

    async def get_contacts(
        self,
        organization_id: Optional[Any] = None,
        **filters
    ) -> List[Dict]:
        return await self._scoped_pages(
            CONTACTS_PATH, settings.TWIZZIT_CONTACTS_PAGE_SIZE, filters, organization_id
        )

    async def get_contacts_by_ids(
        self,
        contact_ids: Iterable[Any],
        organization_id: Optional[Any] = None,
        season_id: Optional[Any] = None
    ) -> List[Dict]:
        """
        Fetch contacts by id in chunks of TWIZZIT_CONTACT_CHUNK_SIZE.

        Each chunk tries a season-scoped then an unscoped variant. When every
        variant of a chunk fails, the full contact list is fetched once and
        filtered locally. Rate limits and authentication failures propagate.
        """
        ids = _as_list(list(contact_ids))
        if not ids:
            return []

        found: Dict[str, Dict] = {}
        for chunk in _chunks(ids, settings.TWIZZIT_CONTACT_CHUNK_SIZE):
            rows = await self._fetch_contact_chunk(chunk, organization_id, season_id)
            if rows is None:
                logger.warning(
                    "Chunked contact lookup failed, falling back to full fetch",
                    extra={"requested": len(ids)}
                )
                return await self._filter_all_contacts(ids, organization_id)
            for row in rows:
                contact_id = as_id(first_present(row, CONTACT_ID))
                if contact_id in chunk and contact_id not in found:
                    found[contact_id] = row

        return [found[i] for i in ids if i in found]

    async def _fetch_contact_chunk(
        self,
        chunk: List[str],
        organization_id: Optional[Any],
        season_id: Optional[Any]
    ) -> Optional[List[Dict]]:
        variants: List[Dict[str, Any]] = []
        if season_id is not None:
            variants.append({CONTACT_PARAM: chunk, MEMBERSHIP_SEASON_PARAM: season_id})
        variants.append({CONTACT_PARAM: chunk})

        for params in variants:
            try:
                return await self._scoped_pages(
                    CONTACTS_PATH, settings.TWIZZIT_CONTACTS_PAGE_SIZE, params, organization_id
                )
            except (RateLimitError, AuthenticationError):
                raise
            except TwizzitApiError as e:
                logger.info(
                    "Contact lookup variant failed",
                    extra={"params": sorted(params), "upstream_status": e.upstream_status}
                )
        return None

    async def _filter_all_contacts(
        self,
        ids: List[str],
        organization_id: Optional[Any]
    ) -> List[Dict]:
        wanted = set(ids)
        by_id: Dict[str, Dict] = {}
        for row in await self.get_contacts(organization_id=organization_id):
            contact_id = as_id(first_present(row, CONTACT_ID))
            if contact_id in wanted and contact_id not in by_id:
                by_id[contact_id] = row
        return [by_id[i] for i in ids if i in by_id]

    async def sample(
        self,
        path: str,
        organization_id: Optional[Any] = None,
        **params
    ) -> List[Any]:
        """First row of an endpoint, for capability checks."""
        params.update({"limit": 1, "offset": 0})
        return extract_rows(await self._scoped_request(path, params, organization_id))

    async def get_group_types(self, organization_id: Optional[Any] = None) -> List[Dict]:
        return extract_rows(await self._scoped_request(GROUP_TYPES_PATH, None, organization_id))

    async def get_group_categories(self, organization_id: Optional[Any] = None) -> List[Dict]:
        return extract_rows(await self._scoped_request(GROUP_CATEGORIES_PATH, None, organization_id))

    async def get_contact_functions(self, organization_id: Optional[Any] = None) -> List[Dict]:
        return extract_rows(await self._scoped_request(CONTACT_FUNCTIONS_PATH, None, organization_id))


def _error_message(body: Any) -> Optional[str]:
    if isinstance(body, Mapping):
        for key in ("error", "message", "detail", "error_description"):
            value = body.get(key)
            if isinstance(value, str) and value:
                return value
    return None


"""Shared pytest fixtures for twizzit-roster-sync tests."""
import os
import sys
from pathlib import Path
from collections import Counter
from typing import Any, Callable, Dict, Generator, List, Optional

# Settings are read at import time; configure the test environment first
os.environ["ENVIRONMENT"] = "test"
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["TWIZZIT_ENCRYPTION_KEY"] = "0f1e2d3c4b5a69788796a5b4c3d2e1f00f1e2d3c4b5a69788796a5b4c3d2e1f0"
os.environ["SCHEDULER_ENABLED"] = "false"
os.environ["LOG_JSON"] = "false"

import httpx
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool
from tenacity import wait_none

# Add project root to Python path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

TEST_ENDPOINT = "https://twizzit.test"


@pytest.fixture(scope="function")
def db_engine():
    """Isolated in-memory database shared by every session of one test."""
    from app.models import Base

    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture(scope="function")
def session_factory(db_engine):
    return sessionmaker(bind=db_engine, autocommit=False, autoflush=False)


@pytest.fixture(scope="function")
def db_session(session_factory) -> Generator[Session, None, None]:
    """Create fresh test database session."""
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def vault(db_session: Session):
    from app.services.core.credential_vault import CredentialVault
    return CredentialVault(db_session)


@pytest.fixture
def credential_id(vault) -> str:
    """A stored credential pointing at the fake API."""
    return vault.store("KC Antwerpen", "api-user", "s3cret-password", TEST_ENDPOINT)


# =============================================================================
# FAKE TWIZZIT API
# =============================================================================

class FakeTwizzitApi:
    """
    In-memory stand-in for the Twizzit v2 API, served through httpx.MockTransport.

    Tests mutate the data attributes and the failure hooks, then inspect
    ``calls`` / ``auth_count`` to assert on the traffic.
    """

    def __init__(self):
        self.organizations: List[Dict[str, Any]] = [{"id": 1, "name": "KC Antwerpen"}]
        self.seasons: List[Dict[str, Any]] = [
            {"id": 42, "name": "2025-2026"},
            {"id": 41, "name": "2024-2025"},
        ]
        self.groups: List[Dict[str, Any]] = []
        self.group_contacts: Dict[str, List[Dict[str, Any]]] = {}
        self.contacts: List[Dict[str, Any]] = []

        self.token_ttl = 3600
        self.auth_status = 200
        self.auth_count = 0
        self.valid_tokens: set = set()

        # path -> list of (status, body) served before normal handling
        self.queued: Dict[str, List[tuple]] = {}
        # paths that refuse requests without organization-ids[]
        self.require_organization: set = set()
        # organization ids the account may not read
        self.denied_organizations: set = set()
        # paths that reject a parameter with 400
        self.rejected_params: Dict[str, set] = {}

        self.calls: List[httpx.Request] = []

    # ------------------------------------------------------------------

    def add_group(self, group_id, name, season_id=42, season_name="2025-2026", organization_id=1, **extra):
        row = {
            "id": group_id,
            "name": name,
            "organization-id": organization_id,
            "season-id": season_id,
            "season-name": season_name,
        }
        row.update(extra)
        self.groups.append(row)
        return row

    def add_contact(self, contact_id, first, last, group_id=None, **extra):
        row = {"id": contact_id, "first-name": first, "last-name": last}
        row.update(extra)
        self.contacts.append(row)
        if group_id is not None:
            self.group_contacts.setdefault(str(group_id), []).append(
                {"contact-id": contact_id, "group-id": group_id, "season-id": 42}
            )
        return row

    def revoke_tokens(self):
        self.valid_tokens.clear()

    def count(self, path_suffix: str) -> int:
        return sum(1 for r in self.calls if r.url.path.endswith(path_suffix))

    @property
    def path_counts(self) -> Counter:
        return Counter(r.url.path for r in self.calls)

    # ------------------------------------------------------------------

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        path = request.url.path

        if path.endswith("/authenticate"):
            return self._authenticate(request)

        short = path[len("/v2/api"):]
        queued = self.queued.get(short)
        if queued:
            status, body = queued.pop(0)
            return httpx.Response(status, json=body)

        token = request.headers.get("Authorization", "").replace("Bearer ", "")
        if token not in self.valid_tokens:
            return httpx.Response(401, json={"error": "Access token is missing or invalid"})

        params = request.url.params

        for name in self.rejected_params.get(short, ()):
            if name in params:
                return httpx.Response(400, json={"error": f"Unknown parameter {name}"})

        organizations = params.get_list("organization-ids[]")
        if short in self.require_organization and not organizations:
            return httpx.Response(403, json={"error": "Access denied: organization required"})
        if any(o in self.denied_organizations for o in map(str, organizations)):
            return httpx.Response(403, json={"error": "No access to the specified organization"})

        if short == "/organizations":
            return httpx.Response(200, json=self.organizations)
        if short == "/seasons":
            return httpx.Response(200, json=self.seasons)
        if short == "/groups":
            rows = self._filter(self.groups, params, {
                "group-ids[]": "id",
                "season-ids[]": "season-id",
                "organization-ids[]": "organization-id",
            })
            return httpx.Response(200, json=self._page(rows, params))
        if short == "/group-contacts":
            rows = []
            for group_id in params.get_list("group-ids[]"):
                rows.extend(self.group_contacts.get(group_id, []))
            return httpx.Response(200, json=rows)
        if short == "/contacts":
            rows = self._filter(self.contacts, params, {"contact-ids[]": "id"})
            return httpx.Response(200, json=self._page(rows, params))
        return httpx.Response(200, json=[])

    def _authenticate(self, request: httpx.Request) -> httpx.Response:
        self.auth_count += 1
        if self.auth_status != 200:
            return httpx.Response(self.auth_status, json={"error": "Invalid credentials"})
        token = f"token-{self.auth_count}"
        self.valid_tokens.add(token)
        return httpx.Response(200, json={"token": token, "expires_in": self.token_ttl})

    @staticmethod
    def _filter(rows, params, fields: Dict[str, str]):
        result = list(rows)
        for param, field_name in fields.items():
            wanted = params.get_list(param)
            if wanted:
                # rows without the field pass every filter
                result = [
                    r for r in result
                    if r.get(field_name) is None or str(r.get(field_name)) in wanted
                ]
        return result

    @staticmethod
    def _page(rows, params):
        offset = int(params.get("offset", 0))
        limit = params.get("limit")
        if limit is None:
            return rows[offset:]
        return rows[offset:offset + int(limit)]


@pytest.fixture
def twizzit_api() -> FakeTwizzitApi:
    return FakeTwizzitApi()


@pytest.fixture
def token_cache():
    from app.services.core.token_manager import TokenCache
    return TokenCache()


@pytest.fixture
def make_client(twizzit_api, token_cache) -> Callable[..., Any]:
    """Build a TwizzitClient that talks to the fake API."""
    from app.services.core.twizzit_client import TwizzitClient

    def factory(organization_label: Optional[str] = "KC Antwerpen", **kwargs):
        http_client = kwargs.pop("http_client", None) or httpx.AsyncClient(
            transport=httpx.MockTransport(twizzit_api.handler)
        )
        kwargs.setdefault("retry_wait", wait_none())
        return TwizzitClient(
            TEST_ENDPOINT,
            "api-user",
            "s3cret-password",
            organization_label=organization_label,
            http_client=http_client,
            token_cache=token_cache,
            **kwargs
        )

    return factory


@pytest.fixture
def service(db_session, vault, make_client):
    """TwizzitSyncService wired to the fake API."""
    from app.services.sync.service import TwizzitSyncService

    return TwizzitSyncService(
        db_session,
        vault=vault,
        client_factory=lambda credential: make_client(credential.organization_name),
    )

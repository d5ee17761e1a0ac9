"""
Twizzit roster sync service: the entry points used by the rest of the app.

Credential administration, connection checks, team and player syncs (and
their read-only previews), sync history and sync configuration all go
through ``TwizzitSyncService``.

Usage:
    service = TwizzitSyncService(db)
    credential_id = service.store_credential("KC Antwerpen", "api-user", "s3cret")
    result = await service.sync_teams(credential_id, season_id="42")
    result = await service.sync_players(credential_id)

Operations that reach the Twizzit API are coroutines; database-only
operations are plain methods. Input is validated with pydantic before any
database write or external call.
"""
import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Callable, Dict, Iterable, List, Optional, Tuple

from sqlalchemy.orm import Session

from app.core.exceptions import (
    AuthenticationError,
    CredentialNotFoundError,
    NotFoundError,
    RateLimitError,
    TwizzitApiError,
    ValidationError,
)
from app.models import TwizzitSyncConfig, TwizzitSyncHistory
from app.repositories.twizzit import (
    ClubMappingRepository,
    CredentialRepository,
    PlayerMappingRepository,
    SyncConfigRepository,
    SyncHistoryRepository,
    TeamMappingRepository,
)
from app.services.core.credential_vault import CredentialVault, DecryptedCredential
from app.services.core.token_manager import TokenCache
from app.services.core import twizzit_client as api
from app.services.core.twizzit_client import TwizzitClient
from app.services.sync.orchestrator import SyncOrchestrator, SyncRun
from app.services.sync.reconcilers import (
    ClubReconciler,
    PlannedAction,
    PlayerReconciler,
    TeamReconciler,
)
from app.services.sync.schemas import (
    CredentialInput,
    HistoryQuery,
    PlayerSyncOptions,
    SyncConfigUpdate,
    TeamSyncOptions,
    parse_input,
)
from app.services.sync.utils.extractors import (
    CONTACT_ID,
    ContactRecord,
    GroupRecord,
    MembershipRow,
    OrganizationRecord,
    UnclassifiedRow,
    as_id,
    classify_roster_row,
    first_present,
    to_contact,
    to_group,
    to_organization,
    to_season,
)
from app.services.sync.utils.season import season_matches
from app.utils.timezone import next_sync_after, utc_now

logger = logging.getLogger(__name__)

ClientFactory = Callable[[DecryptedCredential], TwizzitClient]

# Endpoints probed by verify_connection, in order
CAPABILITIES = ("organizations", "groups", "group_contacts", "contacts", "seasons")


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class TwizzitSyncService:
    """Entry points for one database session."""

    def __init__(
        self,
        db: Session,
        vault: Optional[CredentialVault] = None,
        token_cache: Optional[TokenCache] = None,
        client_factory: Optional[ClientFactory] = None
    ):
        """
        Args:
            db: SQLAlchemy database session
            vault: Credential vault (defaults to one on ``db``)
            token_cache: Token cache for clients built by the default factory
            client_factory: Builds an API client for a decrypted credential
        """
        self.db = db
        self.vault = vault or CredentialVault(db)
        self.token_cache = token_cache
        self.client_factory = client_factory or self._default_client
        self.orchestrator = SyncOrchestrator(db)
        self.credentials = CredentialRepository(db)
        self.configs = SyncConfigRepository(db)
        self.history = SyncHistoryRepository(db)
        self.club_mappings = ClubMappingRepository(db)
        self.team_mappings = TeamMappingRepository(db)
        self.player_mappings = PlayerMappingRepository(db)

    def _default_client(self, credential: DecryptedCredential) -> TwizzitClient:
        return TwizzitClient(
            credential.endpoint,
            credential.username,
            credential.password,
            organization_label=credential.organization_name,
            token_cache=self.token_cache,
        )

    @asynccontextmanager
    async def _client_for(self, credential: DecryptedCredential) -> AsyncIterator[TwizzitClient]:
        client = self.client_factory(credential)
        try:
            yield client
        finally:
            await client.close()

    def _require_credential(self, credential_id: str):
        credential = self.credentials.find_by_id(credential_id)
        if credential is None:
            raise CredentialNotFoundError(credential_id)
        return credential

    # ========================================================================
    # Credentials
    # ========================================================================

    def store_credential(
        self,
        organization_name: str,
        username: str,
        password: str,
        endpoint: Optional[str] = None
    ) -> str:
        """Validate, encrypt and store a credential. Returns its id."""
        data = parse_input(
            CredentialInput,
            organization_name=organization_name,
            username=username,
            password=password,
            endpoint=endpoint,
        )
        return self.vault.store(data.organization_name, data.username, data.password, data.endpoint)

    def list_credentials(self) -> List[Dict]:
        return self.vault.list_credentials()

    def deactivate_credential(self, credential_id: str) -> None:
        self.vault.deactivate(credential_id)

    def delete_credential(self, credential_id: str) -> None:
        self.vault.delete(credential_id)

    async def verify_connection(self, credential_id: str) -> Dict[str, Any]:
        """
        Log in and probe the endpoints a sync needs.

        Probes run one at a time and stop at the first rate-limit response.

        Returns:
            Dict with success, message, status (upstream status of a failed
            login), organization_name, organization_id,
            usable_for_sync and per-endpoint capabilities
        """
        credential = self.vault.retrieve(credential_id)
        result: Dict[str, Any] = {
            "success": False,
            "message": None,
            "status": None,
            "organization_name": credential.organization_name,
            "organization_id": None,
            "usable_for_sync": False,
            "capabilities": {},
        }

        async with self._client_for(credential) as client:
            try:
                await client.authenticate()
            except TwizzitApiError as e:
                result["message"] = str(e)
                result["status"] = e.upstream_status
                logger.warning(
                    "Twizzit connection check failed",
                    extra={
                        "credential_id": credential_id,
                        "error_code": e.error_code,
                        "upstream_status": e.upstream_status,
                    }
                )
                return result

            result["success"] = True
            capabilities = result["capabilities"]
            context: Dict[str, Any] = {}

            for name in CAPABILITIES:
                try:
                    capabilities[name] = await self._probe_capability(client, name, context)
                except RateLimitError as e:
                    capabilities[name] = {"ok": False, "status": e.upstream_status, "error": str(e)}
                    result["message"] = str(e)
                    break
                except TwizzitApiError as e:
                    capabilities[name] = {"ok": False, "status": e.upstream_status, "error": str(e)}

            result["organization_id"] = client.default_organization_id or context.get("organization_id")

        groups_ok = capabilities.get("groups", {}).get("ok", False)
        roster_ok = (
            capabilities.get("group_contacts", {}).get("ok", False)
            or capabilities.get("contacts", {}).get("ok", False)
        )
        result["usable_for_sync"] = bool(groups_ok and roster_ok)
        if result["message"] is None:
            result["message"] = (
                "Connection verified" if result["usable_for_sync"]
                else "Connected, but the account cannot read groups and rosters"
            )

        self.vault.mark_verified(credential_id)
        logger.info(
            "Twizzit connection verified",
            extra={"credential_id": credential_id, "usable_for_sync": result["usable_for_sync"]}
        )
        return result

    async def _probe_capability(self, client: TwizzitClient, name: str, context: Dict) -> Dict:
        if name == "organizations":
            rows = await client.get_organizations()
            organizations = [o for o in (to_organization(r) for r in rows) if o is not None]
            context["organization_id"] = await client.resolve_default_organization_id()
            return {"ok": True, "count": len(organizations)}

        if name == "groups":
            rows = await client.sample(api.GROUPS_PATH)
            groups = [to_group(r) for r in rows]
            if groups and groups[0].group_id:
                context["group_id"] = groups[0].group_id
            return {"ok": True, "count": len(rows)}

        if name == "group_contacts":
            group_id = context.get("group_id")
            if group_id is None:
                return {"ok": False, "error": "no group available to test"}
            rows = await client.get_group_contacts([group_id])
            return {"ok": True, "count": len(rows)}

        if name == "contacts":
            rows = await client.sample(api.CONTACTS_PATH)
            return {"ok": True, "count": len(rows)}

        rows = await client.get_seasons()
        return {"ok": True, "count": len(rows)}

    # ========================================================================
    # Sync options
    # ========================================================================

    async def get_sync_options(
        self,
        credential_id: str,
        organization_id: Optional[str] = None,
        season_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """Organizations, seasons and groups available for selection. Read-only."""
        options = parse_input(TeamSyncOptions, organization_id=organization_id, season_id=season_id)
        credential = self.vault.retrieve(credential_id)

        async with self._client_for(credential) as client:
            organizations = await self._list_organizations(client)
            seasons = [s for s in (to_season(r) for r in await client.get_seasons(options.organization_id)) if s]
            groups = await self._collect_groups(client, options)

            return {
                "default_organization_id": client.default_organization_id,
                "organizations": [
                    {"id": o.organization_id, "name": o.name} for o in organizations
                ],
                "seasons": [{"id": s.season_id, "name": s.name} for s in seasons],
                "groups": [
                    {
                        "id": g.group_id,
                        "name": g.name,
                        "organization_id": g.organization_id,
                        "season_id": g.season_id,
                        "season_label": g.season_label,
                    }
                    for g in groups
                ],
            }

    async def _list_organizations(self, client: TwizzitClient) -> List[OrganizationRecord]:
        """Organizations, or an empty list when the account may not list them."""
        try:
            rows = await client.get_organizations()
        except (RateLimitError, AuthenticationError):
            raise
        except TwizzitApiError as e:
            logger.info(
                "Organization listing unavailable", extra={"upstream_status": e.upstream_status}
            )
            return []
        return [o for o in (to_organization(r) for r in rows) if o is not None]

    async def _season_label(
        self,
        client: TwizzitClient,
        season_id: Optional[str],
        organization_id: Optional[str]
    ) -> Optional[str]:
        """Label of a season id, used to filter rows that only carry labels."""
        if season_id is None:
            return None
        try:
            rows = await client.get_seasons(organization_id)
        except (RateLimitError, AuthenticationError):
            raise
        except TwizzitApiError as e:
            logger.info("Season listing unavailable", extra={"upstream_status": e.upstream_status})
            return None
        for season in (to_season(r) for r in rows):
            if season is not None and season.season_id == season_id:
                return season.name
        return None

    # ========================================================================
    # Teams
    # ========================================================================

    async def _collect_groups(self, client: TwizzitClient, options: TeamSyncOptions) -> List[GroupRecord]:
        """
        Groups in scope: one group by id, or every group (season-filtered).

        Raises:
            NotFoundError: A requested group does not exist
        """
        if options.group_id:
            row = await client.get_group(
                options.group_id,
                season_id=options.season_id,
                organization_id=options.organization_id,
            )
            return [to_group(row)]

        rows = await client.get_groups(
            organization_id=options.organization_id, season_id=options.season_id
        )
        season_label = await self._season_label(client, options.season_id, options.organization_id)
        groups = []
        for record in (to_group(r) for r in rows):
            if season_matches(record.season_id, record.season_label, options.season_id, season_label):
                groups.append(record)
            else:
                logger.debug(
                    "Group outside requested season",
                    extra={"group_id": record.group_id, "season_id": record.season_id}
                )
        return groups

    async def _organizations_for(
        self,
        client: TwizzitClient,
        credential: DecryptedCredential,
        groups: List[GroupRecord],
        options: TeamSyncOptions
    ) -> Dict[Optional[str], OrganizationRecord]:
        """Organization record for every organization id referenced by ``groups``."""
        fallback_id = options.organization_id or client.default_organization_id
        if fallback_id is None and any(g.organization_id is None for g in groups):
            try:
                fallback_id = await client.resolve_default_organization_id()
            except (RateLimitError, AuthenticationError):
                raise
            except TwizzitApiError as e:
                logger.info(
                    "Default organization unavailable", extra={"upstream_status": e.upstream_status}
                )

        known = {o.organization_id: o for o in await self._list_organizations(client)}
        result: Dict[Optional[str], OrganizationRecord] = {}
        for group in groups:
            organization_id = group.organization_id or fallback_id
            if organization_id is None or organization_id in result:
                continue
            result[organization_id] = known.get(organization_id) or OrganizationRecord(
                organization_id=organization_id, name=credential.organization_name
            )
        return result

    def _group_organization(
        self,
        group: GroupRecord,
        options: TeamSyncOptions,
        client: TwizzitClient
    ) -> Optional[str]:
        return group.organization_id or options.organization_id or client.default_organization_id

    async def sync_teams(
        self,
        credential_id: str,
        options: Optional[TeamSyncOptions] = None,
        **kwargs
    ) -> Dict[str, Any]:
        """
        Import groups as local teams (and organizations as clubs).

        Args:
            credential_id: Stored credential
            options: TeamSyncOptions or a dict (group_id, season_id,
                     organization_id, create_missing); keywords also accepted

        Returns:
            Run result (success, sync_id, processed, succeeded, failed, ...)

        Raises:
            ValidationError: Invalid options (before any external call)
            CredentialNotFoundError: Unknown or inactive credential
            ConflictError: A sync is already running for this credential
        """
        opts = parse_input(TeamSyncOptions, options, **kwargs)
        credential = self.vault.retrieve(credential_id)

        async def work(run: SyncRun) -> None:
            async with self._client_for(credential) as client:
                await self._sync_teams(client, credential, opts, run)

        return await self.orchestrator.run(credential_id, "teams", work)

    async def _sync_teams(
        self,
        client: TwizzitClient,
        credential: DecryptedCredential,
        options: TeamSyncOptions,
        run: SyncRun
    ) -> None:
        try:
            groups = await self._collect_groups(client, options)
        except NotFoundError as e:
            run.record_failure(options.group_id, "", str(e))
            return

        logger.info("Reconciling groups", extra={"groups": len(groups)})
        organizations = await self._organizations_for(client, credential, groups, options)

        club_reconciler = ClubReconciler(self.db, credential.id)
        clubs: Dict[str, PlannedAction] = {}
        for organization_id, organization in organizations.items():
            clubs[organization_id] = club_reconciler.apply(organization, create_missing=options.create_missing)

        team_reconciler = TeamReconciler(self.db, credential.id)
        for group in groups:
            club = clubs.get(self._group_organization(group, options, client))
            if club is not None and club.error:
                run.record_failure(group.group_id, group.name or "", f"Club reconciliation failed: {club.error}")
                continue
            plan = team_reconciler.apply(
                group,
                create_missing=options.create_missing,
                club_id=club.local_id if club else None,
                club_mapping_id=club.mapping_id if club else None,
            )
            run.record(plan)

    async def preview_teams(
        self,
        credential_id: str,
        options: Optional[TeamSyncOptions] = None,
        **kwargs
    ) -> Dict[str, Any]:
        """Planned action per group, without writing anything."""
        opts = parse_input(TeamSyncOptions, options, **kwargs)
        credential = self.vault.retrieve(credential_id)

        async with self._client_for(credential) as client:
            groups = await self._collect_groups(client, opts)
            organizations = await self._organizations_for(client, credential, groups, opts)

            club_reconciler = ClubReconciler(self.db, credential.id)
            clubs = {
                organization_id: club_reconciler.plan(organization, create_missing=opts.create_missing)
                for organization_id, organization in organizations.items()
            }

            team_reconciler = TeamReconciler(self.db, credential.id)
            plans = []
            for group in groups:
                club = clubs.get(self._group_organization(group, opts, client))
                plans.append(team_reconciler.plan(
                    group,
                    create_missing=opts.create_missing,
                    club_id=club.local_id if club else None,
                    club_pending=club is not None and club.action == "create",
                ))

        return self._preview_result(credential_id, plans, clubs=list(clubs.values()))

    # ========================================================================
    # Players
    # ========================================================================

    async def _roster(
        self,
        client: TwizzitClient,
        group_id: str,
        options: PlayerSyncOptions,
        season_label: Optional[str]
    ) -> Tuple[List[ContactRecord], List[Dict[str, Any]]]:
        """
        Contacts of one group, and the rows that could not become contacts.

        Membership rows are resolved to full contacts with a chunked lookup.
        """
        rows = await client.get_group_contacts(
            [group_id], organization_id=options.organization_id, season_id=options.season_id
        )

        contacts: Dict[str, ContactRecord] = {}
        memberships: Dict[str, MembershipRow] = {}
        rejected: List[Dict[str, Any]] = []
        invalid: List[ContactRecord] = []

        for row in rows:
            item = classify_roster_row(row)
            if isinstance(item, UnclassifiedRow):
                rejected.append({"id": None, "name": "", "error": item.reason})
                continue
            if not season_matches(item.season_id, item.season_label, options.season_id, season_label):
                continue
            if isinstance(item, MembershipRow):
                if item.group_id is not None and item.group_id != group_id:
                    continue
                memberships.setdefault(item.contact_id, item)
            elif item.contact_id is None:
                invalid.append(item)
            else:
                contacts.setdefault(item.contact_id, item)

        missing = [cid for cid in memberships if cid not in contacts]
        if missing:
            fetched = await client.get_contacts_by_ids(
                missing, organization_id=options.organization_id, season_id=options.season_id
            )
            for row in fetched:
                membership = memberships.get(as_id(first_present(row, CONTACT_ID)))
                if membership is not None:
                    contacts.setdefault(membership.contact_id, to_contact(row, season_from=membership.raw))
            for contact_id in missing:
                if contact_id not in contacts:
                    rejected.append({"id": contact_id, "name": "", "error": "Contact not found"})

        return list(contacts.values()) + invalid, rejected

    def _player_groups(self, credential_id: str, options: PlayerSyncOptions) -> List[Tuple[str, Any]]:
        """(group id, team mapping) pairs in scope for a player sync."""
        if options.group_id:
            mapping = self.team_mappings.find_by_external_id(options.group_id)
            if mapping is None or mapping.team is None or mapping.credential_id != credential_id:
                return []
            return [(options.group_id, mapping)]

        pairs = []
        for mapping in self.team_mappings.list_for_credential(credential_id):
            if mapping.team is None:
                continue
            if options.season_id and mapping.twizzit_season_id not in (None, options.season_id):
                continue
            pairs.append((mapping.twizzit_team_id, mapping))
        return pairs

    async def sync_players(
        self,
        credential_id: str,
        options: Optional[PlayerSyncOptions] = None,
        **kwargs
    ) -> Dict[str, Any]:
        """
        Import group members as local players.

        Without ``group_id`` every group already mapped to a team for this
        credential is synced.

        Raises:
            ValidationError: Invalid options, or ``group_id`` not yet synced as a team
            CredentialNotFoundError: Unknown or inactive credential
            ConflictError: A sync is already running for this credential
        """
        opts = parse_input(PlayerSyncOptions, options, **kwargs)
        credential = self.vault.retrieve(credential_id)
        groups = self._player_groups(credential_id, opts)
        if opts.group_id and not groups:
            raise ValidationError(
                f"Group {opts.group_id} is not mapped to a local team; sync teams first",
                errors=[{"field": "group_id", "message": "group not synced"}],
            )

        async def work(run: SyncRun) -> None:
            async with self._client_for(credential) as client:
                await self._sync_players(client, credential, opts, groups, run)

        return await self.orchestrator.run(credential_id, "players", work)

    async def _sync_players(
        self,
        client: TwizzitClient,
        credential: DecryptedCredential,
        options: PlayerSyncOptions,
        groups: List[Tuple[str, Any]],
        run: SyncRun
    ) -> None:
        reconciler = PlayerReconciler(self.db, credential.id)
        season_label = await self._season_label(client, options.season_id, options.organization_id)

        for group_id, mapping in groups:
            try:
                contacts, rejected = await self._roster(client, group_id, options, season_label)
            except NotFoundError as e:
                run.record_failure(group_id, mapping.twizzit_team_name or "", str(e))
                continue

            logger.info(
                "Reconciling group roster",
                extra={"group_id": group_id, "contacts": len(contacts), "rejected": len(rejected)}
            )
            for item in rejected:
                run.record_failure(item["id"], item["name"], item["error"])
            for record in contacts:
                plan = reconciler.apply(
                    record,
                    create_missing=options.create_missing,
                    team_id=mapping.local_team_id,
                    club_id=mapping.team.club_id,
                    team_mapping_id=mapping.id,
                )
                run.record(plan)

    async def preview_players(
        self,
        credential_id: str,
        options: Optional[PlayerSyncOptions] = None,
        **kwargs
    ) -> Dict[str, Any]:
        """Planned action per group member, without writing anything. Requires ``group_id``."""
        opts = parse_input(PlayerSyncOptions, options, **kwargs)
        if not opts.group_id:
            raise ValidationError(
                "group_id is required to preview players",
                errors=[{"field": "group_id", "message": "required"}],
            )
        credential = self.vault.retrieve(credential_id)

        async with self._client_for(credential) as client:
            season_label = await self._season_label(client, opts.season_id, opts.organization_id)
            contacts, rejected = await self._roster(client, opts.group_id, opts, season_label)

        reconciler = PlayerReconciler(self.db, credential.id)
        plans = [reconciler.plan(record, create_missing=opts.create_missing) for record in contacts]
        plans.extend(
            PlannedAction("invalid", item["id"], item["name"], reason=item["error"]) for item in rejected
        )
        return self._preview_result(credential_id, plans)

    @staticmethod
    def _preview_result(
        credential_id: str,
        plans: Iterable[PlannedAction],
        clubs: Optional[List[PlannedAction]] = None
    ) -> Dict[str, Any]:
        plans = list(plans)
        summary = {action: 0 for action in ("create", "update", "link", "skip", "invalid")}
        for plan in plans:
            summary[plan.action] += 1
        result = {
            "credential_id": credential_id,
            "total": len(plans),
            "summary": summary,
            "items": [plan.to_dict() for plan in plans],
        }
        if clubs is not None:
            result["clubs"] = [plan.to_dict() for plan in clubs]
        return result

    # ========================================================================
    # Scheduled runs
    # ========================================================================

    async def run_configured_sync(self, credential_id: str) -> Dict[str, Any]:
        """Run what a configuration asks for: teams, then players when enabled."""
        config = self.configs.get_or_create(credential_id)
        results: Dict[str, Any] = {}
        if config.sync_teams:
            results["teams"] = await self.sync_teams(credential_id)
        if config.sync_players and self.team_mappings.list_for_credential(credential_id):
            results["players"] = await self.sync_players(credential_id)
        return results

    # ========================================================================
    # History and configuration
    # ========================================================================

    def get_sync_history(
        self,
        credential_id: str,
        limit: int = 50,
        offset: int = 0
    ) -> List[Dict[str, Any]]:
        """Sync runs for a credential, newest first."""
        query = parse_input(HistoryQuery, limit=limit, offset=offset)
        self._require_credential(credential_id)
        records = self.history.list_for_credential(credential_id, query.limit, query.offset)
        return [self._history_to_dict(record) for record in records]

    def get_sync_config(self, credential_id: str) -> Dict[str, Any]:
        """Configuration for a credential; a disabled manual one is created on first access."""
        self._require_credential(credential_id)
        return self._config_to_dict(self.configs.get_or_create(credential_id))

    def update_sync_config(
        self,
        credential_id: str,
        update: Optional[SyncConfigUpdate] = None,
        **values
    ) -> Dict[str, Any]:
        """
        Change cadence, enablement or sync toggles.

        ``next_sync_at`` is recomputed from the cadence when automatic sync
        is enabled, and cleared otherwise.
        """
        changes = parse_input(SyncConfigUpdate, update, **values)
        self._require_credential(credential_id)
        config = self.configs.get_or_create(credential_id)

        for field_name, value in changes.model_dump(exclude_unset=True).items():
            if value is not None:
                setattr(config, field_name, value)

        config.next_sync_at = (
            next_sync_after(config.frequency, utc_now()) if config.auto_sync_enabled else None
        )
        config.updated_at = utc_now()
        self.configs.save()
        logger.info(
            "Updated sync config",
            extra={
                "credential_id": credential_id,
                "auto_sync_enabled": config.auto_sync_enabled,
                "frequency": config.frequency,
            }
        )
        return self._config_to_dict(config)

    def list_team_mappings(self, credential_id: str) -> List[Dict[str, Any]]:
        return [
            {
                "id": m.id,
                "local_team_id": m.local_team_id,
                "local_team_name": m.team.name if m.team else None,
                "twizzit_team_id": m.twizzit_team_id,
                "twizzit_team_name": m.twizzit_team_name,
                "twizzit_season_id": m.twizzit_season_id,
                "sync_status": m.sync_status,
                "sync_error": m.sync_error,
                "last_synced_at": _iso(m.last_synced_at),
            }
            for m in self.team_mappings.list_for_credential(credential_id)
        ]

    def list_player_mappings(
        self,
        credential_id: str,
        team_mapping_id: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        return [
            {
                "id": m.id,
                "local_player_id": m.local_player_id,
                "local_player_name": m.player.full_name if m.player else None,
                "team_mapping_id": m.team_mapping_id,
                "twizzit_player_id": m.twizzit_player_id,
                "twizzit_player_name": m.twizzit_player_name,
                "sync_status": m.sync_status,
                "sync_error": m.sync_error,
                "last_synced_at": _iso(m.last_synced_at),
            }
            for m in self.player_mappings.list_for_credential(credential_id, team_mapping_id)
        ]

    @staticmethod
    def _history_to_dict(record: TwizzitSyncHistory) -> Dict[str, Any]:
        errors = None
        if record.error_message and record.status == "partial_success":
            try:
                errors = json.loads(record.error_message)
            except ValueError:
                errors = None
        return {
            "id": record.id,
            "credential_id": record.credential_id,
            "sync_type": record.sync_type,
            "sync_direction": record.sync_direction,
            "status": record.status,
            "items_processed": record.items_processed,
            "items_succeeded": record.items_succeeded,
            "items_failed": record.items_failed,
            "error_message": record.error_message,
            "errors": errors,
            "started_at": _iso(record.started_at),
            "completed_at": _iso(record.completed_at),
        }

    @staticmethod
    def _config_to_dict(config: TwizzitSyncConfig) -> Dict[str, Any]:
        return {
            "id": config.id,
            "credential_id": config.credential_id,
            "auto_sync_enabled": config.auto_sync_enabled,
            "frequency": config.frequency,
            "sync_teams": config.sync_teams,
            "sync_players": config.sync_players,
            "sync_in_progress": config.sync_in_progress,
            "last_sync_at": _iso(config.last_sync_at),
            "next_sync_at": _iso(config.next_sync_at),
        }


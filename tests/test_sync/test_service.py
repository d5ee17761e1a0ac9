"""End-to-end tests for TwizzitSyncService against the fake API.

Test Strategy:
1. Credentials: validation, storage, connection checks
2. Team sync: create, idempotent re-run, rename, partial failure, season filter
3. Player sync: membership resolution, idempotence, identity failures
4. Previews write nothing
5. Failures inside a run finalize history and free the lock
6. History and configuration entry points

Each test follows the pattern:
- Given: Fake API data and a stored credential
- When: A service entry point is called
- Then: Returned result and database state
"""
import pytest
from sqlalchemy.orm import Session

from app.core.exceptions import (
    ConflictError,
    CredentialNotFoundError,
    RateLimitError,
    TransientServerError,
    ValidationError,
)
from app.models import (
    Club,
    Player,
    Team,
    TwizzitClubMapping,
    TwizzitCredential,
    TwizzitPlayerMapping,
    TwizzitSyncConfig,
    TwizzitSyncHistory,
    TwizzitTeamMapping,
)


def row_counts(db_session: Session):
    db_session.expire_all()
    return {
        "clubs": db_session.query(Club).count(),
        "teams": db_session.query(Team).count(),
        "players": db_session.query(Player).count(),
        "club_mappings": db_session.query(TwizzitClubMapping).count(),
        "team_mappings": db_session.query(TwizzitTeamMapping).count(),
        "player_mappings": db_session.query(TwizzitPlayerMapping).count(),
    }


@pytest.fixture
def roster(twizzit_api):
    """Three groups; two members in U13."""
    twizzit_api.add_group(10, "U13")
    twizzit_api.add_group(11, "U15")
    twizzit_api.add_group(12, "U17")
    twizzit_api.add_contact(100, "Jan", "Peeters", group_id=10, email="jan@club.be", gender="M")
    twizzit_api.add_contact(101, "An", "Janssens", group_id=10, **{"date-of-birth": "2012-05-06"})
    return twizzit_api


class TestCredentials:

    def test_store_credential(self, db_session: Session, service):
        credential_id = service.store_credential("KC Antwerpen", "api-user", "s3cret", "https://twizzit.test/")

        row = db_session.get(TwizzitCredential, credential_id)
        assert row.api_endpoint == "https://twizzit.test"
        assert "s3cret" not in row.encrypted_password
        assert [c["id"] for c in service.list_credentials()] == [credential_id]

    @pytest.mark.parametrize("kwargs", [
        {"organization_name": "", "username": "u", "password": "p"},
        {"organization_name": "KC", "username": "u", "password": ""},
        {"organization_name": "KC", "username": "u", "password": "p", "endpoint": "ftp://twizzit"},
    ])
    def test_invalid_credential_input(self, db_session: Session, service, kwargs):
        with pytest.raises(ValidationError):
            service.store_credential(**kwargs)
        assert db_session.query(TwizzitCredential).count() == 0

    def test_deactivated_credential_not_listed(self, service, credential_id):
        service.deactivate_credential(credential_id)
        assert service.list_credentials() == []

    @pytest.mark.asyncio
    async def test_delete_removes_history_and_config(self, db_session: Session, service, credential_id, roster):
        await service.sync_teams(credential_id)

        service.delete_credential(credential_id)

        db_session.expire_all()
        assert db_session.query(TwizzitCredential).count() == 0
        assert db_session.query(TwizzitSyncHistory).count() == 0
        assert db_session.query(TwizzitSyncConfig).count() == 0

    @pytest.mark.asyncio
    async def test_unknown_credential(self, service):
        with pytest.raises(CredentialNotFoundError):
            await service.sync_teams("missing")


class TestVerifyConnection:

    @pytest.mark.asyncio
    async def test_usable_account(self, db_session: Session, service, credential_id, roster):
        result = await service.verify_connection(credential_id)

        assert result["success"] is True
        assert result["usable_for_sync"] is True
        assert result["organization_name"] == "KC Antwerpen"
        assert result["organization_id"] == "1"
        assert set(result["capabilities"]) == {
            "organizations", "groups", "group_contacts", "contacts", "seasons"
        }
        assert all(c["ok"] for c in result["capabilities"].values())
        db_session.expire_all()
        assert db_session.get(TwizzitCredential, credential_id).last_verified_at is not None

    @pytest.mark.asyncio
    async def test_rejected_credentials(self, service, credential_id, twizzit_api):
        twizzit_api.auth_status = 401

        result = await service.verify_connection(credential_id)

        assert result["success"] is False
        assert result["usable_for_sync"] is False
        assert result["capabilities"] == {}
        assert result["status"] == 401
        assert len(twizzit_api.calls) == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [503, 404])
    async def test_login_failure_reported_not_raised(self, db_session: Session, service, credential_id, twizzit_api, status):
        twizzit_api.auth_status = status

        result = await service.verify_connection(credential_id)

        assert result["success"] is False
        assert result["usable_for_sync"] is False
        assert result["status"] == status
        assert str(status) in result["message"]
        db_session.expire_all()
        assert db_session.get(TwizzitCredential, credential_id).last_verified_at is None

    @pytest.mark.asyncio
    async def test_rate_limit_stops_probing(self, service, credential_id, roster):
        roster.queued["/groups"] = [(429, {"error": "Monthly API call limit exceeded"})]

        result = await service.verify_connection(credential_id)

        assert result["success"] is True
        assert result["usable_for_sync"] is False
        assert result["capabilities"]["groups"]["ok"] is False
        assert result["capabilities"]["groups"]["status"] == 429
        assert "contacts" not in result["capabilities"]
        assert roster.count("/groups") == 1
        assert roster.count("/group-contacts") == 0
        assert result["message"] == "Monthly API call limit exceeded"


class TestSyncTeams:

    @pytest.mark.asyncio
    async def test_creates_club_and_teams(self, db_session: Session, service, credential_id, roster):
        result = await service.sync_teams(credential_id)

        assert result["success"] is True
        assert result["status"] == "success"
        assert (result["processed"], result["succeeded"], result["failed"]) == (3, 3, 0)
        assert result["created"] == 3
        counts = row_counts(db_session)
        assert (counts["clubs"], counts["teams"], counts["team_mappings"]) == (1, 3, 3)
        assert {t.name for t in db_session.query(Team)} == {"U13", "U15", "U17"}
        assert db_session.query(Club).one().name == "KC Antwerpen"

    @pytest.mark.asyncio
    async def test_second_run_is_idempotent(self, db_session: Session, service, credential_id, roster):
        """Re-running creates nothing and reports every mapped entity as succeeded."""
        await service.sync_teams(credential_id)
        before = row_counts(db_session)

        result = await service.sync_teams(credential_id)

        assert row_counts(db_session) == before
        assert result["succeeded"] == before["team_mappings"]
        assert (result["created"], result["updated"]) == (0, 3)

    @pytest.mark.asyncio
    async def test_rename_updates_existing_mapping(self, db_session: Session, service, credential_id, roster):
        await service.sync_teams(credential_id)
        roster.groups[0]["name"] = "U13 Gewestelijk"

        await service.sync_teams(credential_id)

        db_session.expire_all()
        mappings = db_session.query(TwizzitTeamMapping).filter_by(twizzit_team_id="10").all()
        assert len(mappings) == 1
        assert mappings[0].twizzit_team_name == "U13 Gewestelijk"
        assert mappings[0].team.name == "U13 Gewestelijk"
        assert db_session.query(Team).count() == 3

    @pytest.mark.asyncio
    async def test_one_bad_group_isolated(self, db_session: Session, service, credential_id, roster):
        """N-1 groups succeed when one group lacks a name."""
        roster.add_group(13, None)

        result = await service.sync_teams(credential_id)

        assert (result["processed"], result["succeeded"], result["failed"]) == (4, 3, 1)
        assert result["status"] == "partial_success"
        assert result["errors"][0]["id"] == "13"
        history = service.get_sync_history(credential_id)[0]
        assert history["status"] == "partial_success"
        assert history["errors"][0]["error"] == "group has no name"

    @pytest.mark.asyncio
    async def test_existing_local_team_linked(self, db_session: Session, service, credential_id, roster):
        club = Club(name="KC Antwerpen")
        db_session.add(club)
        db_session.flush()
        db_session.add(Team(club_id=club.id, name="u13"))
        db_session.commit()

        result = await service.sync_teams(credential_id)

        assert result["linked"] == 1
        assert result["created"] == 2
        assert row_counts(db_session)["teams"] == 3
        assert row_counts(db_session)["clubs"] == 1

    @pytest.mark.asyncio
    async def test_create_missing_false(self, db_session: Session, service, credential_id, roster):
        result = await service.sync_teams(credential_id, create_missing=False)

        assert result["status"] == "success"
        assert (result["processed"], result["succeeded"], result["skipped"]) == (3, 0, 3)
        assert row_counts(db_session)["teams"] == 0

    @pytest.mark.asyncio
    async def test_season_label_filter(self, db_session: Session, service, credential_id, roster):
        """Rows carrying only a season label are matched on the normalized label."""
        roster.add_group(20, "U11", season_id=None, season_name="2025 – 2026")
        roster.add_group(21, "U9", season_id=None, season_name="2024-2025")
        roster.add_group(22, "U19", season_id=41, season_name="2024-2025")

        result = await service.sync_teams(credential_id, season_id=42)

        assert result["processed"] == 4
        db_session.expire_all()
        assert {t.name for t in db_session.query(Team)} == {"U13", "U15", "U17", "U11"}

    @pytest.mark.asyncio
    async def test_single_group(self, db_session: Session, service, credential_id, roster):
        result = await service.sync_teams(credential_id, {"group_id": 11})

        assert result["processed"] == 1
        assert db_session.query(Team).one().name == "U15"

    @pytest.mark.asyncio
    async def test_missing_group_is_item_failure(self, service, credential_id, roster):
        result = await service.sync_teams(credential_id, group_id="999")

        assert result["status"] == "partial_success"
        assert (result["processed"], result["failed"]) == (1, 1)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("options", [
        {"create_missing": "maybe"},
        {"group_id": True},
        {"unknown_option": 1},
    ])
    async def test_invalid_options_rejected_before_any_call(self, service, credential_id, twizzit_api, options):
        with pytest.raises(ValidationError):
            await service.sync_teams(credential_id, options)
        assert twizzit_api.calls == []

    @pytest.mark.asyncio
    async def test_concurrent_sync_conflict(self, db_session: Session, service, credential_id, roster):
        config = service.configs.get_or_create(credential_id)
        config.sync_in_progress = True
        db_session.commit()

        with pytest.raises(ConflictError):
            await service.sync_teams(credential_id)
        assert roster.calls == []

    @pytest.mark.asyncio
    async def test_upstream_failure_releases_lock(self, db_session: Session, service, credential_id, roster):
        """A run that throws ends failed and leaves the configuration unlocked."""
        roster.queued["/groups"] = [(500, {"error": "boom"})] * 3

        with pytest.raises(TransientServerError):
            await service.sync_teams(credential_id)

        db_session.expire_all()
        history = db_session.query(TwizzitSyncHistory).one()
        assert history.status == "failed"
        assert history.completed_at is not None
        config = db_session.query(TwizzitSyncConfig).filter_by(credential_id=credential_id).one()
        assert config.sync_in_progress is False
        assert roster.count("/groups") == 3

    @pytest.mark.asyncio
    async def test_rate_limit_fails_run_after_one_attempt(self, db_session: Session, service, credential_id, roster):
        roster.queued["/groups"] = [(429, {"error": "Monthly API call limit exceeded"})] * 3

        with pytest.raises(RateLimitError) as exc_info:
            await service.sync_teams(credential_id)

        assert exc_info.value.upstream_status == 429
        assert roster.count("/groups") == 1
        db_session.expire_all()
        assert db_session.query(TwizzitSyncHistory).one().status == "failed"

    @pytest.mark.asyncio
    async def test_token_reused_across_runs(self, service, credential_id, roster):
        await service.sync_teams(credential_id)
        await service.sync_players(credential_id)
        await service.sync_teams(credential_id)

        assert roster.auth_count == 1


class TestSyncPlayers:

    @pytest.mark.asyncio
    async def test_members_imported(self, db_session: Session, service, credential_id, roster):
        await service.sync_teams(credential_id)

        result = await service.sync_players(credential_id)

        assert (result["processed"], result["succeeded"], result["failed"]) == (2, 2, 0)
        db_session.expire_all()
        u13 = db_session.query(TwizzitTeamMapping).filter_by(twizzit_team_id="10").one()
        players = db_session.query(Player).order_by(Player.first_name).all()
        assert [p.full_name for p in players] == ["An Janssens", "Jan Peeters"]
        assert all(p.team_id == u13.local_team_id for p in players)
        assert all(p.is_twizzit_registered for p in players)
        assert {m.team_mapping_id for m in db_session.query(TwizzitPlayerMapping)} == {u13.id}

    @pytest.mark.asyncio
    async def test_second_run_is_idempotent(self, db_session: Session, service, credential_id, roster):
        await service.sync_teams(credential_id)
        await service.sync_players(credential_id)
        before = row_counts(db_session)

        result = await service.sync_players(credential_id)

        assert row_counts(db_session) == before
        assert result["succeeded"] == before["player_mappings"] == 2
        assert result["created"] == 0

    @pytest.mark.asyncio
    async def test_member_without_identity_isolated(self, db_session: Session, service, credential_id, roster):
        roster.add_contact(102, "Madonna", None, group_id=10)
        await service.sync_teams(credential_id)

        result = await service.sync_players(credential_id)

        assert (result["processed"], result["succeeded"], result["failed"]) == (3, 2, 1)
        assert result["status"] == "partial_success"
        assert row_counts(db_session)["players"] == 2

    @pytest.mark.asyncio
    async def test_unknown_contact_reported(self, service, credential_id, roster):
        roster.group_contacts["10"].append({"contact-id": 999, "group-id": 10})
        await service.sync_teams(credential_id)

        result = await service.sync_players(credential_id)

        assert result["failed"] == 1
        assert {"id": "999", "name": "", "error": "Contact not found"} in result["errors"]

    @pytest.mark.asyncio
    async def test_embedded_contacts_need_no_lookup(self, service, credential_id, roster):
        roster.group_contacts["10"] = [
            {"contact-id": 100, "group-id": 10, "contact": {"first-name": "Jan", "last-name": "Peeters"}},
        ]
        await service.sync_teams(credential_id)

        result = await service.sync_players(credential_id, group_id=10)

        assert result["succeeded"] == 1
        assert roster.count("/contacts") == 0

    @pytest.mark.asyncio
    async def test_unmapped_group_rejected(self, service, credential_id, roster):
        with pytest.raises(ValidationError):
            await service.sync_players(credential_id, group_id="10")
        assert roster.calls == []

    @pytest.mark.asyncio
    async def test_group_mapped_by_other_credential_rejected(self, service, credential_id, roster):
        await service.sync_teams(credential_id)
        other_id = service.store_credential("KC Antwerpen", "other-user", "pw", "https://twizzit.test")
        calls_before = len(roster.calls)

        with pytest.raises(ValidationError):
            await service.sync_players(other_id, group_id="10")
        assert len(roster.calls) == calls_before

    @pytest.mark.asyncio
    async def test_season_without_mapped_groups(self, service, credential_id, roster):
        await service.sync_teams(credential_id)

        result = await service.sync_players(credential_id, season_id="41")

        assert result["processed"] == 0
        assert result["status"] == "success"


class TestPreviews:

    @pytest.mark.asyncio
    async def test_preview_teams_writes_nothing(self, db_session: Session, service, credential_id, roster):
        preview = await service.preview_teams(credential_id)

        assert preview["total"] == 3
        assert preview["summary"]["create"] == 3
        assert [c["action"] for c in preview["clubs"]] == ["create"]
        counts = row_counts(db_session)
        assert counts["clubs"] == counts["teams"] == counts["team_mappings"] == 0
        assert db_session.query(TwizzitSyncHistory).count() == 0

    @pytest.mark.asyncio
    async def test_preview_after_sync_plans_updates(self, service, credential_id, roster):
        await service.sync_teams(credential_id)

        preview = await service.preview_teams(credential_id)

        assert preview["summary"]["update"] == 3

    @pytest.mark.asyncio
    async def test_preview_players(self, db_session: Session, service, credential_id, roster):
        roster.add_contact(102, "Madonna", None, group_id=10)

        preview = await service.preview_players(credential_id, group_id=10)

        assert preview["summary"]["create"] == 2
        assert preview["summary"]["invalid"] == 1
        assert row_counts(db_session)["players"] == 0

    @pytest.mark.asyncio
    async def test_preview_players_requires_group(self, service, credential_id):
        with pytest.raises(ValidationError):
            await service.preview_players(credential_id)


class TestSyncOptions:

    @pytest.mark.asyncio
    async def test_lists_selectable_scope(self, service, credential_id, roster):
        roster.add_group(22, "U19", season_id=41, season_name="2024-2025")

        options = await service.get_sync_options(credential_id, season_id="41")

        assert options["organizations"] == [{"id": "1", "name": "KC Antwerpen"}]
        assert [s["id"] for s in options["seasons"]] == ["42", "41"]
        assert [g["name"] for g in options["groups"]] == ["U19"]

    @pytest.mark.asyncio
    async def test_writes_nothing(self, db_session: Session, service, credential_id, roster):
        await service.get_sync_options(credential_id)

        assert row_counts(db_session)["clubs"] == 0
        assert db_session.query(TwizzitSyncHistory).count() == 0


class TestHistoryAndConfig:

    @pytest.mark.asyncio
    async def test_history_newest_first(self, service, credential_id, roster):
        await service.sync_teams(credential_id)
        await service.sync_players(credential_id)

        history = service.get_sync_history(credential_id)

        assert [h["sync_type"] for h in history] == ["players", "teams"]
        assert all(h["status"] == "success" for h in history)
        assert service.get_sync_history(credential_id, limit=1, offset=1)[0]["sync_type"] == "teams"

    @pytest.mark.parametrize("limit,offset", [(0, 0), (101, 0), (10, -1)])
    def test_history_paging_validated(self, service, credential_id, limit, offset):
        with pytest.raises(ValidationError):
            service.get_sync_history(credential_id, limit=limit, offset=offset)

    def test_history_unknown_credential(self, service):
        with pytest.raises(CredentialNotFoundError):
            service.get_sync_history("missing")

    def test_default_config(self, service, credential_id):
        config = service.get_sync_config(credential_id)

        assert config["auto_sync_enabled"] is False
        assert config["frequency"] == "manual"
        assert config["sync_in_progress"] is False
        assert config["next_sync_at"] is None

    def test_enable_daily_schedules_next_run(self, service, credential_id):
        config = service.update_sync_config(credential_id, auto_sync_enabled=True, frequency="daily")

        assert config["auto_sync_enabled"] is True
        assert config["frequency"] == "daily"
        assert config["next_sync_at"] is not None

        config = service.update_sync_config(credential_id, {"auto_sync_enabled": False})
        assert config["frequency"] == "daily"
        assert config["next_sync_at"] is None

    def test_invalid_frequency(self, service, credential_id):
        with pytest.raises(ValidationError):
            service.update_sync_config(credential_id, frequency="monthly")

    @pytest.mark.asyncio
    async def test_configured_sync_runs_teams_then_players(self, service, credential_id, roster):
        result = await service.run_configured_sync(credential_id)

        assert result["teams"]["succeeded"] == 3
        assert result["players"]["succeeded"] == 2

    @pytest.mark.asyncio
    async def test_mapping_listings(self, service, credential_id, roster):
        await service.sync_teams(credential_id)
        await service.sync_players(credential_id)

        teams = service.list_team_mappings(credential_id)
        players = service.list_player_mappings(credential_id)

        assert sorted(t["twizzit_team_id"] for t in teams) == ["10", "11", "12"]
        assert sorted(p["local_player_name"] for p in players) == ["An Janssens", "Jan Peeters"]

"""Tests for schedule management."""

import pytest

from scrape_orchestrator.models.job import ScrapeSubType, ScrapeType
from scrape_orchestrator.schemas.schedule import ScheduleCreate, ScheduleUpdate
from scrape_orchestrator.services import schedules
from scrape_orchestrator.services.schedules import (
    ScheduleNotFoundError,
    ScheduleValidationError,
)

pytestmark = pytest.mark.asyncio


@pytest.fixture
def scheduler(make_scheduler, make_engine):
    return make_scheduler(make_engine())


def _create(target_ids: list[str], **overrides) -> ScheduleCreate:
    data = {
        "name": "Morning docket",
        "frequency": "daily@09:00",
        "timezone": "America/Sao_Paulo",
        "target_config_ids": target_ids,
        "scrape_type": ScrapeType.GENERAL_DOCKET,
        "credential_id": "cred-1",
    }
    data.update(overrides)
    return ScheduleCreate(**data)


class TestCreateDefinition:
    """Tests for create_definition."""

    async def test_create_without_scheduler(self, db_session, target_factory, test_settings):
        """Should store the translated cron and compute next_run_at."""
        target = await target_factory()

        definition = await schedules.create_definition(
            db_session, _create([target.id]), settings=test_settings
        )

        assert definition.cron_expression == "0 9 * * *"
        assert definition.timezone == "America/Sao_Paulo"
        assert definition.run_count == 0
        assert definition.next_run_at is not None
        assert definition.next_run_at.hour == 12  # 09:00 in Sao Paulo

    async def test_create_registers_timer(
        self, db_session, target_factory, scheduler, test_settings, timer_backend
    ):
        target = await target_factory()

        definition = await schedules.create_definition(
            db_session, _create([target.id], frequency="weekly@1,3,5@08:30"), scheduler, test_settings
        )

        assert definition.cron_expression == "30 8 * * 1,3,5"
        assert scheduler.is_registered(definition.id)
        assert definition.id in timer_backend.schedules

    async def test_inactive_definition_has_no_timer(
        self, db_session, target_factory, scheduler, test_settings
    ):
        target = await target_factory()

        definition = await schedules.create_definition(
            db_session, _create([target.id], active=False), scheduler, test_settings
        )

        assert definition.next_run_at is None
        assert not scheduler.is_registered(definition.id)

    async def test_unsupported_timezone_falls_back(
        self, db_session, target_factory, test_settings
    ):
        target = await target_factory()
        settings = test_settings.model_copy(update={"default_timezone": "America/Manaus"})

        definition = await schedules.create_definition(
            db_session, _create([target.id], timezone="Atlantis/Capital"), settings=settings
        )

        assert definition.timezone == "America/Manaus"

    async def test_invalid_frequency(self, db_session, target_factory, test_settings):
        target = await target_factory()

        with pytest.raises(ScheduleValidationError, match="HH:MM"):
            await schedules.create_definition(
                db_session, _create([target.id], frequency="daily@9am"), settings=test_settings
            )

    async def test_unknown_targets(self, db_session, test_settings):
        with pytest.raises(ScheduleValidationError, match="Unknown target configs"):
            await schedules.create_definition(
                db_session, _create(["missing"]), settings=test_settings
            )

    async def test_minimum_interval(self, db_session, target_factory, test_settings):
        """Should reject schedules firing more often than allowed."""
        target = await target_factory()
        settings = test_settings.model_copy(update={"min_interval_minutes": 60})

        with pytest.raises(ScheduleValidationError, match="minimum interval"):
            await schedules.create_definition(
                db_session, _create([target.id], frequency="*/15 * * * *"), settings=settings
            )
        definition = await schedules.create_definition(
            db_session, _create([target.id], frequency="every 1 hour"), settings=settings
        )
        assert definition.cron_expression == "0 */1 * * *"

    async def test_minimum_interval_irregular_hours(
        self, db_session, target_factory, test_settings
    ):
        """Should reject two fires an hour apart even when the next gap is a day."""
        target = await target_factory()
        settings = test_settings.model_copy(update={"min_interval_minutes": 120})

        with pytest.raises(ScheduleValidationError, match="fires every 60 minutes"):
            await schedules.create_definition(
                db_session, _create([target.id], frequency="0 9,10 * * *"), settings=settings
            )

    async def test_credential_quota(self, db_session, target_factory, test_settings):
        target = await target_factory()
        settings = test_settings.model_copy(update={"max_schedules_per_credential": 1})

        await schedules.create_definition(db_session, _create([target.id]), settings=settings)
        with pytest.raises(ScheduleValidationError, match="limit: 1"):
            await schedules.create_definition(db_session, _create([target.id]), settings=settings)
        other = await schedules.create_definition(
            db_session, _create([target.id], credential_id="cred-2"), settings=settings
        )
        assert other.credential_id == "cred-2"

    async def test_pending_requires_subtype(self, target_factory):
        target = await target_factory()

        with pytest.raises(ValueError, match="scrape_subtype"):
            _create([target.id], scrape_type=ScrapeType.PENDING_MANIFESTATIONS)


class TestUpdateDefinition:
    """Tests for update_definition."""

    async def test_update_frequency_reregisters(
        self, db_session, definition_factory, scheduler, test_settings, timer_backend
    ):
        definition = await definition_factory()
        await scheduler.register(definition)

        updated = await schedules.update_definition(
            db_session, definition.id, ScheduleUpdate(frequency="every 6 hours"), scheduler, test_settings
        )

        assert updated.cron_expression == "0 */6 * * *"
        assert timer_backend.removed == [definition.id]
        assert scheduler.stats()["definitions"][0]["cron"] == "0 */6 * * *"

    async def test_update_timezone_only(self, db_session, definition_factory, test_settings):
        definition = await definition_factory(cron_expression="0 9 * * *", timezone="UTC")

        updated = await schedules.update_definition(
            db_session, definition.id, ScheduleUpdate(timezone="America/Sao_Paulo"), settings=test_settings
        )

        assert updated.cron_expression == "0 9 * * *"
        assert updated.timezone == "America/Sao_Paulo"
        assert updated.next_run_at.hour == 12

    async def test_deactivate(self, db_session, definition_factory, scheduler, test_settings):
        definition = await definition_factory()
        await scheduler.register(definition)

        updated = await schedules.update_definition(
            db_session, definition.id, ScheduleUpdate(active=False), scheduler, test_settings
        )

        assert updated.active is False
        assert updated.next_run_at is None
        assert not scheduler.is_registered(definition.id)

    async def test_pending_type_needs_subtype(self, db_session, definition_factory, test_settings):
        definition = await definition_factory()

        with pytest.raises(ScheduleValidationError, match="scrape_subtype"):
            await schedules.update_definition(
                db_session,
                definition.id,
                ScheduleUpdate(scrape_type=ScrapeType.PENDING_MANIFESTATIONS),
                settings=test_settings,
            )

        updated = await schedules.update_definition(
            db_session,
            definition.id,
            ScheduleUpdate(
                scrape_type=ScrapeType.PENDING_MANIFESTATIONS,
                scrape_subtype=ScrapeSubType.NO_DEADLINE,
            ),
            settings=test_settings,
        )
        assert updated.scrape_subtype == ScrapeSubType.NO_DEADLINE

    async def test_update_missing(self, db_session, test_settings):
        with pytest.raises(ScheduleNotFoundError):
            await schedules.update_definition(
                db_session, "missing", ScheduleUpdate(name="x"), settings=test_settings
            )


class TestToggleAndDelete:
    """Tests for toggle_definition / delete_definition."""

    async def test_toggle_with_scheduler(self, db_session, definition_factory, scheduler):
        """Should pause then resume, keeping run history."""
        definition = await definition_factory()
        await scheduler.register(definition)
        await scheduler.fire(definition.id)

        paused = await schedules.toggle_definition(db_session, definition.id, scheduler)

        assert paused.active is False
        assert paused.run_count == 1
        assert not scheduler.is_registered(definition.id)

        resumed = await schedules.toggle_definition(db_session, definition.id, scheduler)

        assert resumed.active is True
        assert resumed.run_count == 1
        assert scheduler.is_registered(definition.id)

    async def test_toggle_without_scheduler(self, db_session, definition_factory):
        definition = await definition_factory()

        paused = await schedules.toggle_definition(db_session, definition.id)

        assert paused.active is False
        assert paused.next_run_at is None

    async def test_delete(self, db_session, definition_factory, scheduler):
        definition = await definition_factory()
        await scheduler.register(definition)

        await schedules.delete_definition(db_session, definition.id, scheduler)

        assert not scheduler.is_registered(definition.id)
        with pytest.raises(ScheduleNotFoundError):
            await schedules.get_definition(db_session, definition.id)


class TestListAndResponse:
    async def test_list_filters(self, db_session, definition_factory):
        first = await definition_factory(credential_id="cred-a")
        await definition_factory(credential_id="cred-b")
        paused = await definition_factory(credential_id="cred-a", active=False)

        by_credential = await schedules.list_definitions(db_session, credential_id="cred-a")
        active_a = await schedules.list_definitions(db_session, credential_id="cred-a", active=True)

        assert {d.id for d in by_credential} == {first.id, paused.id}
        assert [d.id for d in active_a] == [first.id]

    async def test_to_response(self, db_session, definition_factory):
        definition = await definition_factory(cron_expression="30 8 * * 1,3,5")

        response = schedules.to_response(await schedules.get_definition(db_session, definition.id))

        assert response.frequency == "weekly@1,3,5@08:30"
        assert response.description == "Weekly on Mon, Wed, Fri at 08:30"
        assert response.run_count == 0

"""Tests for cron helpers."""

from datetime import UTC, datetime

import pytest

from scrape_orchestrator.core.cron import (
    CronValidationError,
    build_trigger,
    cron_to_frequency,
    describe_cron,
    frequency_to_cron,
    get_next_run_time,
    get_next_run_times,
    min_interval_minutes,
    split_cron,
    validate_cron_expression,
)


class TestFrequencyToCron:
    """Tests for frequency_to_cron."""

    def test_daily(self):
        """Should translate daily@HH:MM."""
        assert frequency_to_cron("daily@09:00") == "0 9 * * *"
        assert frequency_to_cron("daily@7:05") == "5 7 * * *"

    def test_weekly_sorts_and_dedupes_days(self):
        """Should sort days and accept names and 7 for Sunday."""
        assert frequency_to_cron("weekly@5,1,3@08:30") == "30 8 * * 1,3,5"
        assert frequency_to_cron("weekly@{mon,fri}@18:00") == "0 18 * * 1,5"
        assert frequency_to_cron("weekly@7,0@06:00") == "0 6 * * 0"

    def test_interval(self):
        """Should translate every N hours."""
        assert frequency_to_cron("every 6 hours") == "0 */6 * * *"
        assert frequency_to_cron("every 1 hour") == "0 */1 * * *"

    @pytest.mark.parametrize("frequency", ["every 0 hours", "every 25 hours"])
    def test_interval_out_of_range(self, frequency):
        """Should reject intervals outside 1-24 hours."""
        with pytest.raises(CronValidationError, match="between 1 and 24"):
            frequency_to_cron(frequency)

    def test_raw_cron_passthrough(self):
        """Should pass a valid raw cron expression through, normalizing spaces."""
        assert frequency_to_cron("  0  9 * *   1-5 ") == "0 9 * * 1-5"

    @pytest.mark.parametrize(
        "frequency",
        ["daily@25:00", "weekly@@09:00", "weekly@9@09:00", "sometimes", "0 9 * *"],
    )
    def test_invalid_frequencies(self, frequency):
        """Should reject malformed frequencies."""
        with pytest.raises(CronValidationError):
            frequency_to_cron(frequency)


class TestValidateCronExpression:
    """Tests for validate_cron_expression / split_cron."""

    @pytest.mark.parametrize(
        "expression",
        ["0 9 * * *", "*/15 * * * *", "0 9 * * mon-fri", "0 9 1,15 * *", "0 9 * * 7"],
    )
    def test_valid(self, expression):
        """Should accept standard five-field expressions."""
        assert validate_cron_expression(expression) == (True, None)

    def test_wrong_field_count(self):
        """Should report the field count."""
        ok, error = validate_cron_expression("0 9 * *")

        assert ok is False
        assert "5 fields" in error

    @pytest.mark.parametrize("expression", ["61 * * * *", "0 25 * * *", "0 9 * * 8", "0 9 $ * *"])
    def test_invalid_values(self, expression):
        """Should reject out-of-range values and stray characters."""
        ok, error = validate_cron_expression(expression)

        assert ok is False
        assert error

    def test_split_cron(self):
        """Should return the five fields."""
        assert split_cron("0 9 * * 1") == ["0", "9", "*", "*", "1"]

    def test_invalid_timezone(self):
        """Should refuse to build a trigger for an unknown timezone."""
        with pytest.raises(CronValidationError, match="timezone"):
            build_trigger("0 9 * * *", "Mars/Olympus_Mons")


class TestNextRunTime:
    """Tests for get_next_run_time / get_next_run_times."""

    def test_daily_in_sao_paulo(self):
        """Should fire at the next local 09:00 after creation."""
        created = datetime(2024, 1, 1, 23, 0, tzinfo=UTC)  # 20:00 in Sao Paulo

        next_run = get_next_run_time("0 9 * * *", "America/Sao_Paulo", now=created)

        assert next_run == datetime(2024, 1, 2, 12, 0, tzinfo=UTC)

    def test_same_day_fire_behind_utc(self):
        """Should keep a fire due later the same local day in a zone behind UTC."""
        now = datetime(2026, 1, 5, 12, 30, tzinfo=UTC)  # 09:30 in Sao Paulo

        next_run = get_next_run_time("0 10 * * *", "America/Sao_Paulo", now=now)

        assert next_run == datetime(2026, 1, 5, 13, 0, tzinfo=UTC)

    def test_local_date_differs_from_utc_date(self):
        """Should read the local date when UTC has already rolled over."""
        now = datetime(2026, 1, 6, 1, 0, tzinfo=UTC)  # 22:00 on Jan 5 in Sao Paulo

        times = get_next_run_times("30 22,23 * * *", "America/Sao_Paulo", count=2, now=now)

        assert times == [
            datetime(2026, 1, 6, 1, 30, tzinfo=UTC),
            datetime(2026, 1, 6, 2, 30, tzinfo=UTC),
        ]

    def test_strictly_after_now(self):
        """Should not return the current instant even if it matches."""
        now = datetime(2024, 1, 2, 12, 0, tzinfo=UTC)

        next_run = get_next_run_time("0 9 * * *", "America/Sao_Paulo", now=now)

        assert next_run == datetime(2024, 1, 3, 12, 0, tzinfo=UTC)

    def test_naive_now_is_utc(self):
        """Should treat a naive now as UTC."""
        next_run = get_next_run_time("30 * * * *", "UTC", now=datetime(2024, 1, 1, 10, 0))

        assert next_run == datetime(2024, 1, 1, 10, 30, tzinfo=UTC)

    @pytest.mark.parametrize("day", ["0", "7", "sun"])
    def test_sunday_numbering(self, day):
        """Should treat 0 and 7 as Sunday."""
        wednesday = datetime(2024, 1, 3, 12, 0, tzinfo=UTC)

        next_run = get_next_run_time(f"0 9 * * {day}", "UTC", now=wednesday)

        assert next_run == datetime(2024, 1, 7, 9, 0, tzinfo=UTC)

    def test_weekday_range(self):
        """Should skip the weekend for 1-5."""
        friday_evening = datetime(2024, 1, 5, 20, 0, tzinfo=UTC)

        next_run = get_next_run_time("0 9 * * 1-5", "UTC", now=friday_evening)

        assert next_run == datetime(2024, 1, 8, 9, 0, tzinfo=UTC)

    def test_next_run_times(self):
        """Should list consecutive fire times."""
        now = datetime(2024, 1, 1, 1, 0, tzinfo=UTC)

        times = get_next_run_times("0 */6 * * *", "UTC", count=3, now=now)

        assert times == [
            datetime(2024, 1, 1, 6, 0, tzinfo=UTC),
            datetime(2024, 1, 1, 12, 0, tzinfo=UTC),
            datetime(2024, 1, 1, 18, 0, tzinfo=UTC),
        ]

    def test_min_interval(self):
        """Should measure the shortest gap between fires."""
        now = datetime(2024, 1, 1, 1, 0, tzinfo=UTC)

        assert min_interval_minutes("0 */6 * * *", "UTC", now=now) == 360
        assert min_interval_minutes("*/5 * * * *", "UTC", now=now) == 5

    @pytest.mark.parametrize("hour", [8, 9, 10, 11])
    def test_min_interval_irregular_expression(self, hour):
        """Should report the shortest gap whatever the time of the check."""
        now = datetime(2024, 1, 1, hour, 30, tzinfo=UTC)

        assert min_interval_minutes("0 9,10 * * *", "UTC", now=now) == 60

    def test_min_interval_weekly_cycle(self):
        """Should find the short gap between Friday and Saturday fires."""
        monday = datetime(2024, 1, 1, 12, 0, tzinfo=UTC)

        assert min_interval_minutes("0 9 * * 1,5,6", "UTC", now=monday) == 24 * 60

    def test_min_interval_beyond_window(self):
        """Should still measure expressions that fire less than twice a week."""
        now = datetime(2024, 1, 1, 12, 0, tzinfo=UTC)

        assert min_interval_minutes("0 9 1 * *", "UTC", now=now) == 29 * 24 * 60


class TestCronToFrequency:
    """Tests for cron_to_frequency / describe_cron."""

    def test_reverse_translation(self):
        """Should recover the structured shapes."""
        assert cron_to_frequency("0 9 * * *") == "daily@09:00"
        assert cron_to_frequency("30 8 * * 1,3,5") == "weekly@1,3,5@08:30"
        assert cron_to_frequency("0 */6 * * *") == "every 6 hours"

    def test_custom_expression_is_returned_as_is(self):
        """Should leave other expressions untouched."""
        assert cron_to_frequency("*/15 9-17 * * 1-5") == "*/15 9-17 * * 1-5"

    def test_describe(self):
        """Should describe each shape for humans."""
        assert describe_cron("0 9 * * *") == "Daily at 09:00"
        assert describe_cron("30 8 * * 1,3,5") == "Weekly on Mon, Wed, Fri at 08:30"
        assert describe_cron("0 */1 * * *") == "Every hour"
        assert describe_cron("0 */6 * * *") == "Every 6 hours"
        assert describe_cron("0 9 1 * *") == "Custom: 0 9 1 * *"

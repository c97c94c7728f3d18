"""
Plan Generator Tests - Scripted Generation Service
==================================================

Drives PlanGenerator end to end against FakeGenerationClient:

1. Clean runs, batching and the batch utilization guard
2. Retry policies (MAX_TOKENS, transport errors, conservative policy)
3. Normalization of misnamed/missing meals and repair of incomplete items
4. Cross-day deduplication, slot regeneration and the escape valve
5. Partial failure, rate limiting and total-failure diagnosis
6. Whole-plan duplicate sweep and user-triggered meal regeneration
"""

import asyncio

import pytest

from fakes import (
    api_response,
    blocked_response,
    day_response,
    empty_response,
    item_response,
    make_day,
    plan_text,
    truncated_response,
)


def run_async(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


def all_items(plan):
    return [item for day in plan.days for item in day.items()]


def assert_dedup_invariant(plan, report):
    """Every pair of items is at or under 0.5 unless the later one came through the escape valve."""
    from similarity import combined_similarity

    escaped = {(e["day"], e["meal"]) for e in report.escape_valve}
    seen = []
    for day in plan.days:
        for meal in day.meals:
            for earlier in seen:
                if (day.day, meal.name) not in escaped:
                    assert combined_similarity(meal.item, earlier) <= 0.5, (
                        f"{day.day} {meal.name} '{meal.item.title}' duplicates '{earlier.title}'"
                    )
            seen.append(meal.item)


# =============================================================================
# Test: Clean Runs
# =============================================================================

class TestCleanRun:

    @pytest.mark.readonly
    def test_three_days_no_repairs_no_regenerations(self, fake_client, profile, settings):
        """Well-formed unique days: one call per day, nothing else."""
        from plan_generator import PlanGenerator

        generator = PlanGenerator(fake_client, settings)
        plan = run_async(generator.generate_plan(profile, ["Monday", "Tuesday", "Wednesday"]))

        assert plan.day_labels() == ["Monday", "Tuesday", "Wednesday"]
        assert len(all_items(plan)) == 9
        assert generator.report.repair_invocations == 0
        assert generator.report.regenerations == 0
        assert len(fake_client.calls) == 3
        assert plan.partial_notice() is None
        assert plan.is_complete

    @pytest.mark.readonly
    def test_every_day_has_three_canonical_meals(self, fake_client, profile, settings):
        from plan_generator import PlanGenerator

        plan = run_async(PlanGenerator(fake_client, settings).generate_plan(profile))

        assert len(plan.days) == 7
        for day in plan.days:
            assert [m.name for m in day.meals] == ["Breakfast", "Lunch", "Dinner"]
            assert all(len(m.items) == 1 and m.item.is_complete for m in day.meals)
            assert day.totals is not None

    @pytest.mark.readonly
    def test_days_follow_caller_order(self, fake_client, profile, settings):
        from plan_generator import PlanGenerator

        plan = run_async(PlanGenerator(fake_client, settings).generate_plan(profile, ["Friday", "Monday"]))

        assert plan.day_labels() == ["Friday", "Monday"]
        assert "in order: Friday." in fake_client.calls[0].prompt

    @pytest.mark.readonly
    def test_first_attempt_sends_response_schema(self, fake_client, profile, settings):
        from plan_generator import PlanGenerator

        run_async(PlanGenerator(fake_client, settings).generate_plan(profile, ["Monday"]))

        call = fake_client.calls[0]
        assert call.attempt.use_schema is True
        assert call.response_schema["required"] == ["days"]

    @pytest.mark.readonly
    def test_avoid_list_carries_previous_titles(self, fake_client, profile, settings):
        from plan_generator import PlanGenerator

        plan = run_async(PlanGenerator(fake_client, settings).generate_plan(profile, ["Monday", "Tuesday"]))

        monday_titles = [i.title for i in plan.days[0].items()]
        tuesday_prompt = fake_client.calls[1].prompt
        for title in monday_titles:
            assert title in tuesday_prompt
        assert "Avoid these titles" not in fake_client.calls[0].prompt

    @pytest.mark.readonly
    def test_progress_callback_after_each_day(self, fake_client, profile, settings):
        from plan_generator import DayStatus, PlanGenerator

        events = []
        generator = PlanGenerator(fake_client, settings, progress_callback=events.append)
        run_async(generator.generate_plan(profile, ["Monday", "Tuesday", "Wednesday"]))

        assert [(e.day_label, e.index, e.total) for e in events] == [
            ("Monday", 1, 3), ("Tuesday", 2, 3), ("Wednesday", 3, 3),
        ]
        assert all(e.status == DayStatus.ACCEPTED for e in events)

    @pytest.mark.readonly
    def test_status_history_walks_the_state_machine(self, fake_client, profile, settings):
        from plan_generator import DayStatus, PlanGenerator

        generator = PlanGenerator(fake_client, settings)
        run_async(generator.generate_plan(profile, ["Monday"]))

        assert generator.report.status_history["Monday"] == [
            DayStatus.PENDING, DayStatus.GENERATING, DayStatus.PARSING,
            DayStatus.DEDUPING, DayStatus.ACCEPTED,
        ]

    @pytest.mark.readonly
    def test_empty_day_list_generates_nothing(self, fake_client, profile, settings):
        from plan_generator import PlanGenerator

        plan = run_async(PlanGenerator(fake_client, settings).generate_plan(profile, []))

        assert plan.days == []
        assert plan.requested_days == []
        assert fake_client.calls == []


# =============================================================================
# Test: Batching
# =============================================================================

class TestBatching:

    @pytest.mark.readonly
    def test_batch_of_three_uses_one_call(self, fake_client, profile, settings):
        from plan_generator import PlanGenerator

        settings.batch_size = 3
        plan = run_async(PlanGenerator(fake_client, settings).generate_plan(profile, ["Monday", "Tuesday", "Wednesday"]))

        assert plan.day_labels() == ["Monday", "Tuesday", "Wednesday"]
        assert len(fake_client.calls) == 1
        assert "in order: Monday, Tuesday, Wednesday." in fake_client.calls[0].prompt

    @pytest.mark.readonly
    def test_missing_batch_day_generated_alone(self, fake_client, profile, settings):
        from plan_generator import PlanGenerator

        settings.batch_size = 3
        partial_batch = api_response(plan_text([
            make_day("Monday", ["Berry Yogurt Parfait", "Lentil Stew", "Salmon Rice"]),
            make_day("Tuesday", ["Spinach Frittata Cup", "Bean Chili Pot", "Turkey Meatballs"]),
        ]))
        fake_client.script("day", partial_batch)

        plan = run_async(PlanGenerator(fake_client, settings).generate_plan(profile, ["Monday", "Tuesday", "Wednesday"]))

        assert plan.day_labels() == ["Monday", "Tuesday", "Wednesday"]
        assert len(fake_client.calls) == 2
        assert "in order: Wednesday." in fake_client.calls[1].prompt

    @pytest.mark.readonly
    def test_rate_limit_mid_batch_keeps_finished_days(self, fake_client, profile, settings):
        """Monday came back in the batch; Tuesday's own call hits a 429."""
        from plan_errors import RateLimitError
        from plan_generator import DayStatus, PlanGenerator

        settings.batch_size = 2
        fake_client.script(
            "day",
            api_response(plan_text([make_day("Monday", ["Berry Yogurt Parfait", "Lentil Stew", "Salmon Rice"])])),
            RateLimitError(),
        )
        events = []
        generator = PlanGenerator(fake_client, settings, progress_callback=events.append)

        plan = run_async(generator.generate_plan(profile, ["Monday", "Tuesday"]))

        assert plan.day_labels() == ["Monday"]
        assert [e.day_label for e in events] == ["Monday"]
        assert generator.report.rate_limited is True
        assert generator.report.failures == {"Tuesday": "rate limited"}
        assert generator.report.status_history["Tuesday"][-1] == DayStatus.FAILED
        assert any("rate limiting" in d for d in plan.diagnostics)
        assert len(fake_client.calls) == 2

    @pytest.mark.readonly
    def test_batch_over_utilization_falls_back_to_single_days(self, fake_client, profile, settings):
        """A batch that would exceed 75% of the context window is never sent."""
        from plan_generator import PlanGenerator

        settings.batch_size = 3
        settings.model_limit = 4096
        plan = run_async(PlanGenerator(fake_client, settings).generate_plan(profile, ["Monday", "Tuesday", "Wednesday"]))

        assert len(plan.days) == 3
        assert len(fake_client.calls) == 3
        for call, label in zip(fake_client.calls, ["Monday", "Tuesday", "Wednesday"]):
            assert f"in order: {label}." in call.prompt


# =============================================================================
# Test: Retry Policies
# =============================================================================

class TestRetryPolicy:

    @pytest.mark.readonly
    def test_max_tokens_then_success_uses_two_calls(self, fake_client, profile, settings):
        from plan_generator import PlanGenerator

        fake_client.script("day", truncated_response(),
                           day_response("Monday", ["Berry Yogurt Parfait", "Lentil Stew", "Salmon Rice"]))

        generator = PlanGenerator(fake_client, settings)
        plan = run_async(generator.generate_plan(profile, ["Monday"]))

        assert plan.day_labels() == ["Monday"]
        assert len(fake_client.calls) == 2
        first, second = fake_client.calls
        assert second.attempt.max_output_tokens < first.attempt.max_output_tokens
        assert second.attempt.temperature < first.attempt.temperature

    @pytest.mark.readonly
    def test_empty_text_is_retried(self, fake_client, profile, settings):
        from plan_generator import PlanGenerator

        fake_client.script("day", empty_response(), empty_response())
        plan = run_async(PlanGenerator(fake_client, settings).generate_plan(profile, ["Monday"]))

        assert len(plan.days) == 1
        assert len(fake_client.calls) == 3

    @pytest.mark.readonly
    def test_server_errors_are_retried(self, fake_client, profile, settings):
        from plan_errors import TransportError
        from plan_generator import PlanGenerator

        fake_client.script("day", TransportError("upstream 503", status=503))
        plan = run_async(PlanGenerator(fake_client, settings).generate_plan(profile, ["Monday"]))

        assert len(plan.days) == 1
        assert len(fake_client.calls) == 2

    @pytest.mark.readonly
    def test_conservative_policy_makes_one_attempt(self, fake_client, profile, settings):
        from attempt_policy import AttemptPolicy
        from config import ATTEMPT_POLICY_PRESETS
        from plan_generator import PlanGenerator

        settings.day_policy = AttemptPolicy.from_config("conservative", ATTEMPT_POLICY_PRESETS["conservative"])
        fake_client.script("day", truncated_response())

        generator = PlanGenerator(fake_client, settings)
        plan = run_async(generator.generate_plan(profile, ["Monday", "Tuesday"]))

        assert plan.day_labels() == ["Tuesday"]
        assert len(fake_client.calls_of("day")) == 2
        assert "Monday" in generator.report.failures

    @pytest.mark.readonly
    def test_budget_never_exceeds_safe_window(self, fake_client, profile, settings):
        from plan_generator import PlanGenerator
        from token_budget import TokenEstimator

        settings.model_limit = 3000
        run_async(PlanGenerator(fake_client, settings).generate_plan(profile, ["Monday"]))

        call = fake_client.calls[0]
        prompt_tokens = TokenEstimator.estimate_tokens(call.prompt)
        assert prompt_tokens + call.attempt.max_output_tokens <= 0.75 * 3000 or call.attempt.max_output_tokens == 300


# =============================================================================
# Test: Normalization and Repair
# =============================================================================

class TestNormalizationAndRepair:

    @pytest.mark.readonly
    def test_misnamed_meals_are_mapped_onto_slots(self, fake_client, profile, settings):
        from fakes import make_item
        from plan_generator import PlanGenerator

        raw_day = {
            "day": "Monday",
            "meals": [
                {"name": "Brunch", "items": [make_item("Berry Yogurt Parfait")]},
                {"name": " DINNER ", "items": [make_item("Salmon Rice")]},
                {"name": "Snack", "items": [make_item("Lentil Stew")]},
                {"name": "Supper", "items": [make_item("Turkey Meatballs")]},
            ],
        }
        fake_client.script("day", api_response(plan_text([raw_day], wrapper="weekPlan")))

        plan = run_async(PlanGenerator(fake_client, settings).generate_plan(profile, ["Monday"]))

        meals = plan.days[0].meals
        assert [m.name for m in meals] == ["Breakfast", "Lunch", "Dinner"]
        assert [m.item.title for m in meals] == ["Berry Yogurt Parfait", "Lentil Stew", "Salmon Rice"]

    @pytest.mark.readonly
    def test_missing_meal_slot_is_regenerated(self, fake_client, profile, settings):
        from fakes import make_item
        from plan_generator import PlanGenerator

        raw_day = {"day": "Monday", "meals": [
            {"name": "Breakfast", "items": [make_item("Berry Yogurt Parfait")]},
            {"name": "Lunch", "items": [make_item("Lentil Stew")]},
        ]}
        fake_client.script("day", api_response(plan_text([raw_day])))

        generator = PlanGenerator(fake_client, settings)
        plan = run_async(generator.generate_plan(profile, ["Monday"]))

        assert plan.days[0].meal("Dinner").item.is_complete
        assert generator.report.regenerations == 1
        assert len(fake_client.calls_of("meal")) == 1
        assert "for Dinner on Monday" in fake_client.calls_of("meal")[0].prompt

    @pytest.mark.readonly
    def test_incomplete_item_triggers_one_repair(self, fake_client, profile, settings):
        from fakes import make_item
        from plan_generator import PlanGenerator

        raw_day = make_day("Monday", ["Berry Yogurt Parfait", "Lentil Stew", "Salmon Rice"])
        raw_day["meals"][1]["items"] = [make_item("Lentil Stew", ingredients=[])]
        fake_client.script("day", api_response(plan_text([raw_day])))

        generator = PlanGenerator(fake_client, settings)
        plan = run_async(generator.generate_plan(profile, ["Monday"]))

        assert generator.report.repair_invocations == 1
        assert len(fake_client.calls_of("repair")) == 1
        assert plan.days[0].meal("Lunch").item.title == "Lentil Stew"
        assert plan.days[0].meal("Lunch").item.is_complete

    @pytest.mark.readonly
    def test_failed_repair_falls_back_to_slot_regeneration(self, fake_client, profile, settings):
        from fakes import make_item
        from plan_generator import PlanGenerator

        raw_day = make_day("Monday", ["Berry Yogurt Parfait", "Lentil Stew", "Salmon Rice"])
        raw_day["meals"][1]["items"] = [make_item("Lentil Stew", steps=[])]
        fake_client.script("day", api_response(plan_text([raw_day])))
        fake_client.script("repair", api_response("sorry, I cannot help with that"))

        generator = PlanGenerator(fake_client, settings)
        plan = run_async(generator.generate_plan(profile, ["Monday"]))

        assert plan.days[0].is_complete
        assert generator.report.regenerations == 1
        assert plan.days[0].meal("Lunch").item.title != "Lentil Stew"

    @pytest.mark.readonly
    def test_totals_recomputed_after_regeneration(self, fake_client, profile, settings):
        from plan_generator import PlanGenerator

        raw_day = make_day("Monday", ["Berry Yogurt Parfait", "Lentil Stew", "Salmon Rice"])
        raw_day["totals"] = {"calories": 9999, "protein": 1, "carbs": 1, "fat": 1}
        raw_day["meals"] = raw_day["meals"][:2]
        fake_client.script("day", api_response(plan_text([raw_day])))

        plan = run_async(PlanGenerator(fake_client, settings).generate_plan(profile, ["Monday"]))

        day = plan.days[0]
        assert day.totals.calories == sum(i.calories for i in day.items())


# =============================================================================
# Test: Deduplication
# =============================================================================

class TestDeduplication:

    @pytest.mark.readonly
    def test_forced_duplicate_lunch_is_regenerated(self, fake_client, profile, settings):
        from plan_generator import PlanGenerator
        from similarity import title_similarity

        fake_client.script(
            "day",
            day_response("Monday", ["Berry Yogurt Parfait", "Grilled Chicken Salad", "Lentil Stew"]),
            day_response("Tuesday", ["Spinach Omelette Wrap", "Grilled Chicken Salad", "Salmon Rice"]),
        )
        fake_client.script("meal", item_response("Falafel Plate"))

        generator = PlanGenerator(fake_client, settings)
        plan = run_async(generator.generate_plan(profile, ["Monday", "Tuesday"]))

        monday_lunch = plan.days[0].meal("Lunch").item.title
        tuesday_lunch = plan.days[1].meal("Lunch").item.title
        assert tuesday_lunch == "Falafel Plate"
        assert title_similarity(tuesday_lunch, monday_lunch) < 0.5
        assert generator.report.regenerations == 1
        assert generator.report.escape_valve == []
        assert_dedup_invariant(plan, generator.report)

    @pytest.mark.readonly
    def test_regeneration_prompt_avoids_used_titles(self, fake_client, profile, settings):
        from plan_generator import PlanGenerator

        fake_client.script(
            "day",
            day_response("Monday", ["Berry Yogurt Parfait", "Grilled Chicken Salad", "Lentil Stew"]),
            day_response("Tuesday", ["Spinach Omelette Wrap", "Grilled Chicken Salad", "Salmon Rice"]),
        )
        fake_client.script("meal", item_response("Falafel Plate"))

        run_async(PlanGenerator(fake_client, settings).generate_plan(profile, ["Monday", "Tuesday"]))

        prompt = fake_client.calls_of("meal")[0].prompt
        assert "Grilled Chicken Salad" in prompt
        assert "Spinach Omelette Wrap" in prompt

    @pytest.mark.readonly
    def test_escape_valve_accepts_least_similar_and_records_it(self, fake_client, profile, settings):
        from plan_generator import PlanGenerator
        from prompts import RETRY_UNIQUENESS_HINT
        from similarity import combined_similarity

        settings.sweep_duplicates = False
        fake_client.script(
            "day",
            day_response("Monday", ["Berry Yogurt Parfait", "Grilled Chicken Salad", "Lentil Stew"]),
            day_response("Tuesday", ["Spinach Omelette Wrap", "Grilled Chicken Salad", "Salmon Rice"]),
        )
        fake_client.always("meal", item_response("Grilled Chicken Salad"))

        generator = PlanGenerator(fake_client, settings)
        plan = run_async(generator.generate_plan(profile, ["Monday", "Tuesday"]))

        meal_calls = fake_client.calls_of("meal")
        assert len(meal_calls) == settings.regeneration_rounds
        assert RETRY_UNIQUENESS_HINT not in meal_calls[0].prompt
        assert RETRY_UNIQUENESS_HINT in meal_calls[1].prompt

        assert generator.report.escape_valve == [
            {"day": "Tuesday", "meal": "Lunch", "title": "Grilled Chicken Salad", "similarity": 1.0},
        ]
        tuesday_lunch = plan.days[1].meal("Lunch").item
        assert combined_similarity(tuesday_lunch, plan.days[0].meal("Lunch").item) > 0.5
        assert_dedup_invariant(plan, generator.report)

    @pytest.mark.readonly
    def test_near_duplicate_candidate_skipped_for_unique_one(self, profile, settings):
        from plan_generator import DedupContext, PlanGenerator
        from plan_models import Item
        from fakes import FakeGenerationClient, make_item

        ctx = DedupContext()
        ctx.commit(Item.from_dict(make_item("Chicken Garden Salad")))
        candidates = {
            "Breakfast": [Item.from_dict(make_item("Berry Yogurt Parfait"))],
            "Lunch": [Item.from_dict(make_item("Grilled Chicken Garden Salad")),
                      Item.from_dict(make_item("Lentil Stew"))],
            "Dinner": [Item.from_dict(make_item("Salmon Rice"))],
        }

        generator = PlanGenerator(FakeGenerationClient(), settings)
        selections = generator.select_day_items("Tuesday", candidates, ctx)

        assert [s.item.title for s in selections] == ["Berry Yogurt Parfait", "Lentil Stew", "Salmon Rice"]
        assert not any(s.needs_regeneration for s in selections)
        assert len(ctx.all_previous_items) == 4

    @pytest.mark.readonly
    def test_acceptable_band_taken_when_nothing_cleaner(self, profile, settings):
        """A candidate between 0.3 and 0.5 is accepted rather than regenerated."""
        from plan_generator import DedupContext, PlanGenerator
        from plan_models import Item
        from fakes import FakeGenerationClient, make_item

        ctx = DedupContext()
        ctx.commit(Item.from_dict(make_item("Chicken Rice")))
        candidates = {
            "Breakfast": [Item.from_dict(make_item("Berry Yogurt Parfait"))],
            "Lunch": [Item.from_dict(make_item("Chicken Noodles"))],
            "Dinner": [Item.from_dict(make_item("Salmon Tray"))],
        }

        generator = PlanGenerator(FakeGenerationClient(), settings)
        lunch = generator.select_day_items("Tuesday", candidates, ctx)[1]

        assert lunch.item.title == "Chicken Noodles"
        assert lunch.similarity == pytest.approx(1 / 3)
        assert lunch.needs_regeneration is False

    @pytest.mark.readonly
    def test_candidate_at_duplicate_threshold_is_regenerated(self, profile, settings):
        """Only candidates strictly below the duplicate threshold are taken without regeneration."""
        from plan_generator import DedupContext, PlanGenerator
        from plan_models import Item
        from fakes import FakeGenerationClient, make_item

        ctx = DedupContext()
        ctx.commit(Item.from_dict(make_item("Chicken Garden Salad")))
        candidates = {
            "Breakfast": [Item.from_dict(make_item("Berry Yogurt Parfait"))],
            "Lunch": [Item.from_dict(make_item("Grilled Chicken Salad"))],
            "Dinner": [Item.from_dict(make_item("Salmon Tray"))],
        }

        generator = PlanGenerator(FakeGenerationClient(), settings)
        lunch = generator.select_day_items("Tuesday", candidates, ctx)[1]

        assert lunch.similarity == pytest.approx(0.5)
        assert lunch.needs_regeneration is True
        assert lunch.item.title == "Grilled Chicken Salad"


# =============================================================================
# Test: Failures
# =============================================================================

class TestFailures:

    @pytest.mark.readonly
    def test_one_failed_day_returns_partial_plan(self, fake_client, profile, settings):
        from plan_generator import DayStatus, PlanGenerator

        fake_client.script(
            "day",
            day_response("Monday", ["Berry Yogurt Parfait", "Lentil Stew", "Salmon Rice"]),
            blocked_response("PROHIBITED_CONTENT"),
            day_response("Wednesday", ["Spinach Frittata Cup", "Bean Chili Pot", "Turkey Meatballs"]),
        )
        events = []
        generator = PlanGenerator(fake_client, settings, progress_callback=events.append)
        plan = run_async(generator.generate_plan(profile, ["Monday", "Tuesday", "Wednesday"]))

        assert plan.day_labels() == ["Monday", "Wednesday"]
        assert plan.partial_notice() == "2 of 3 days generated. Regenerate to fill in the rest."
        assert any(d.startswith("Tuesday:") for d in plan.diagnostics)
        assert generator.report.status_history["Tuesday"][-1] == DayStatus.FAILED
        assert [e.status for e in events] == [DayStatus.ACCEPTED, DayStatus.FAILED, DayStatus.ACCEPTED]
        assert "partialNotice" in plan.to_dict()

    @pytest.mark.readonly
    def test_failed_day_leaves_no_dedup_state_behind(self, fake_client, profile, settings):
        """Items of a day that ultimately failed are not in the next day's avoid list."""
        from plan_generator import PlanGenerator

        settings.regeneration_rounds = 1
        broken = make_day("Monday", ["Berry Yogurt Parfait", "Lentil Stew", "Salmon Rice"])
        broken["meals"] = broken["meals"][:2]
        fake_client.script("day", api_response(plan_text([broken])))
        fake_client.script("meal", blocked_response())

        generator = PlanGenerator(fake_client, settings)
        plan = run_async(generator.generate_plan(profile, ["Monday", "Tuesday"]))

        assert plan.day_labels() == ["Tuesday"]
        assert "Berry Yogurt Parfait" not in fake_client.calls_of("day")[1].prompt

    @pytest.mark.readonly
    def test_total_blockage_raises_content_diagnosis(self, fake_client, profile, settings):
        from plan_errors import TotalFailureError
        from plan_generator import PlanGenerator

        fake_client.always("day", blocked_response())
        fake_client.always("health", blocked_response())

        generator = PlanGenerator(fake_client, settings)
        with pytest.raises(TotalFailureError) as exc_info:
            run_async(generator.generate_plan(profile, ["Monday", "Tuesday"]))

        assert exc_info.value.diagnosis == "content_or_complexity"
        assert len(exc_info.value.diagnostics) == 2
        # Blocked prompts are not retried
        assert len(fake_client.calls_of("day")) == 2
        assert len(fake_client.calls_of("health")) == 1

    @pytest.mark.readonly
    def test_total_transport_failure_is_told_apart(self, fake_client, profile, settings):
        from plan_errors import TotalFailureError, TransportError
        from plan_generator import PlanGenerator

        outage = TransportError("Cannot connect to host", status=None)
        fake_client.always("day", outage)
        fake_client.always("health", outage)

        with pytest.raises(TotalFailureError) as exc_info:
            run_async(PlanGenerator(fake_client, settings).generate_plan(profile, ["Monday"]))

        assert exc_info.value.diagnosis == "service_unreachable"
        assert len(fake_client.calls_of("day")) == len(settings.day_policy)
        assert str(exc_info.value) != TotalFailureError("content_or_complexity").args[0]

    @pytest.mark.readonly
    def test_auth_failure_diagnosis(self, fake_client, profile, settings):
        from plan_errors import TotalFailureError, TransportError
        from plan_generator import PlanGenerator

        denied = TransportError("API key not valid", status=403)
        fake_client.always("day", denied)
        fake_client.always("health", denied)

        with pytest.raises(TotalFailureError) as exc_info:
            run_async(PlanGenerator(fake_client, settings).generate_plan(profile, ["Monday"]))

        assert exc_info.value.diagnosis == "auth_or_config"
        assert len(fake_client.calls_of("day")) == 1

    @pytest.mark.readonly
    def test_rate_limit_stops_run_and_keeps_finished_days(self, fake_client, profile, settings):
        from plan_errors import RateLimitError
        from plan_generator import PlanGenerator

        fake_client.script(
            "day",
            day_response("Monday", ["Berry Yogurt Parfait", "Lentil Stew", "Salmon Rice"]),
            RateLimitError("quota exceeded"),
        )
        generator = PlanGenerator(fake_client, settings)
        plan = run_async(generator.generate_plan(profile, ["Monday", "Tuesday", "Wednesday"]))

        assert plan.day_labels() == ["Monday"]
        assert generator.report.rate_limited is True
        assert len(fake_client.calls) == 2
        assert any("rate limiting" in d for d in plan.diagnostics)

    @pytest.mark.readonly
    def test_rate_limit_on_first_day_skips_health_check(self, fake_client, profile, settings):
        from plan_errors import RateLimitError, TotalFailureError
        from plan_generator import PlanGenerator

        fake_client.always("day", RateLimitError())

        with pytest.raises(TotalFailureError) as exc_info:
            run_async(PlanGenerator(fake_client, settings).generate_plan(profile, ["Monday", "Tuesday"]))

        assert exc_info.value.diagnosis == "rate_limited"
        assert fake_client.calls_of("health") == []
        assert len(fake_client.calls) == 1

    @pytest.mark.readonly
    @pytest.mark.parametrize("k", [0, 1, 2])
    def test_k_of_n_failures_give_n_minus_k_days(self, fake_client, profile, settings, k):
        from plan_generator import PlanGenerator

        labels = ["Monday", "Tuesday", "Wednesday"]
        entries = [blocked_response()] * k + [
            day_response(label, [f"{label} Sunrise Plate", f"{label} Midday Plate", f"{label} Evening Plate"],
                         ingredients=[{"item": f"{label} {n}", "qty": 1} for n in range(2)])
            for label in labels[k:]
        ]
        fake_client.script("day", *entries)
        settings.sweep_duplicates = False
        settings.duplicate_threshold = 0.9
        settings.unique_threshold = 0.9

        plan = run_async(PlanGenerator(fake_client, settings).generate_plan(profile, labels))

        assert len(plan.days) == len(labels) - k


# =============================================================================
# Test: Sweep and Meal Regeneration
# =============================================================================

def _plan_from(days):
    from plan_models import Day, MealPlan

    plan = MealPlan(requested_days=[d["day"] for d in days])
    for raw in days:
        plan.add_day(Day.from_dict(raw))
    return plan


class TestSweepAndRegeneration:

    @pytest.mark.readonly
    def test_find_duplicates_in_plan_order(self, fake_client, settings):
        from plan_generator import PlanGenerator

        plan = _plan_from([
            make_day("Monday", ["Berry Yogurt Parfait", "Grilled Chicken Salad", "Beef Stew Pot"]),
            make_day("Tuesday", ["Spinach Omelette Wrap", "Grilled Chicken Salad", "Salmon Rice"]),
            make_day("Wednesday", ["Mango Chia Cup", "Bean Chili Pot", "Beef Stew"]),
        ])
        conflicts = PlanGenerator(fake_client, settings).find_duplicates(plan)

        assert [(c.day_index, c.meal_name, c.similar_to) for c in conflicts] == [
            (1, "Lunch", "Grilled Chicken Salad"),
            (2, "Dinner", "Beef Stew Pot"),
        ]

    @pytest.mark.readonly
    def test_sweep_replaces_highest_similarity_first(self, fake_client, profile, settings):
        from plan_generator import PlanGenerator

        plan = _plan_from([
            make_day("Monday", ["Berry Yogurt Parfait", "Grilled Chicken Salad", "Beef Stew Pot"]),
            make_day("Wednesday", ["Mango Chia Cup", "Bean Chili Pot", "Beef Stew"]),
            make_day("Tuesday", ["Spinach Omelette Wrap", "Grilled Chicken Salad", "Salmon Rice"]),
        ])
        fake_client.script("meal", item_response("Falafel Plate"), item_response("Tofu Noodles"))

        replaced = run_async(PlanGenerator(fake_client, settings).sweep_duplicates(profile, plan))

        assert replaced == 2
        first, second = fake_client.calls_of("meal")
        assert "for Lunch on Tuesday" in first.prompt
        assert "for Dinner on Wednesday" in second.prompt
        assert plan.days[2].meal("Lunch").item.title == "Falafel Plate"
        assert plan.days[1].meal("Dinner").item.title == "Tofu Noodles"

    @pytest.mark.readonly
    def test_regenerate_meal_replaces_and_recomputes_totals(self, fake_client, profile, settings):
        from plan_generator import PlanGenerator

        plan = _plan_from([make_day("Monday", ["Berry Yogurt Parfait", "Lentil Stew", "Salmon Rice"])])
        fake_client.script("meal", item_response("Falafel Plate", calories=700))

        replaced = run_async(PlanGenerator(fake_client, settings).regenerate_meal(profile, plan, 0, "lunch"))

        assert replaced is True
        day = plan.days[0]
        assert day.meal("Lunch").item.title == "Falafel Plate"
        assert day.totals.calories == 450 + 700 + 450
        # The recipe being replaced is always on the avoid list
        assert "Lentil Stew" in fake_client.calls[0].prompt

    @pytest.mark.readonly
    def test_regenerate_meal_keeps_current_when_nothing_better(self, fake_client, profile, settings):
        from plan_generator import PlanGenerator

        plan = _plan_from([make_day("Monday", ["Berry Yogurt Parfait", "Lentil Stew", "Salmon Rice"])])
        fake_client.always("meal", item_response("Berry Yogurt Parfait"))

        generator = PlanGenerator(fake_client, settings)
        replaced = run_async(generator.regenerate_meal(profile, plan, 0, "Lunch"))

        assert replaced is False
        assert plan.days[0].meal("Lunch").item.title == "Lentil Stew"
        assert generator.report.escape_valve == []

    @pytest.mark.readonly
    def test_regenerate_meal_unknown_meal(self, fake_client, profile, settings):
        from plan_generator import PlanGenerator

        plan = _plan_from([make_day("Monday", ["Berry Yogurt Parfait", "Lentil Stew", "Salmon Rice"])])
        with pytest.raises(ValueError):
            run_async(PlanGenerator(fake_client, settings).regenerate_meal(profile, plan, 0, "Snack"))


# =============================================================================
# Test: Run State
# =============================================================================

class TestDedupContext:

    @pytest.mark.readonly
    def test_commit_tracks_titles_tokens_items(self):
        from fakes import make_item
        from plan_generator import DedupContext
        from plan_models import Item

        ctx = DedupContext()
        ctx.commit(Item.from_dict(make_item("Grilled Chicken Salad")))
        ctx.commit(Item.from_dict(make_item("Chicken & Rice")))

        assert ctx.has_title("grilled chicken  salad!")
        assert ctx.has_any_token("Chicken Tikka")
        assert not ctx.has_any_token("Grilled Salad")
        assert ctx.avoid_tokens() == ["chicken", "rice"]
        assert len(ctx.all_previous_items) == 2

    @pytest.mark.readonly
    def test_rollback_forgets_later_commits(self):
        from fakes import make_item
        from plan_generator import DedupContext
        from plan_models import Item

        ctx = DedupContext()
        ctx.commit(Item.from_dict(make_item("Lentil Stew")))
        mark = ctx.mark()
        ctx.commit(Item.from_dict(make_item("Salmon Rice")))
        ctx.rollback(mark)

        assert ctx.avoid_titles() == ["Lentil Stew"]
        assert ctx.avoid_tokens() == ["lentil", "stew"]

    @pytest.mark.readonly
    def test_from_plan_excludes_slot(self):
        from plan_generator import DedupContext

        plan = _plan_from([make_day("Monday", ["Berry Yogurt Parfait", "Lentil Stew", "Salmon Rice"])])
        ctx = DedupContext.from_plan(plan, exclude=(0, "Lunch"))

        assert ctx.avoid_titles() == ["Berry Yogurt Parfait", "Salmon Rice"]


class TestDiagnose:

    @pytest.mark.readonly
    @pytest.mark.parametrize("entry, expected", [
        (api_response('{"status":"ok"}'), "content_or_complexity"),
        (blocked_response(), "content_or_complexity"),
        ("rate", "rate_limited"),
        (401, "auth_or_config"),
        (404, "auth_or_config"),
        (500, "service_unreachable"),
        (None, "service_unreachable"),
    ])
    def test_health_check_classification(self, fake_client, settings, entry, expected):
        from plan_errors import RateLimitError, TransportError
        from plan_generator import PlanGenerator

        if entry == "rate":
            entry = RateLimitError()
        elif entry is None or isinstance(entry, int):
            entry = TransportError("health check failed", status=entry)
        fake_client.script("health", entry)

        assert run_async(PlanGenerator(fake_client, settings).diagnose()) == expected


class TestGenerationSettings:

    @pytest.mark.readonly
    def test_defaults_match_config(self, settings):
        assert len(settings.day_policy) == 3
        assert settings.batch_size == 1
        assert settings.unique_threshold == 0.3
        assert settings.duplicate_threshold == 0.5

    @pytest.mark.readonly
    def test_from_config_resolves_named_policy(self, monkeypatch):
        import config
        from plan_generator import GenerationSettings

        monkeypatch.setitem(config.USER_CONFIG, "generation", {"day_policy": "conservative", "batch_size": 2})
        settings = GenerationSettings.from_config()

        assert settings.day_policy.name == "conservative"
        assert len(settings.day_policy) == 1
        assert settings.batch_size == 2

"""
Plan Generator
==============

Drives the generation of a multi-day meal plan:

1. For each requested day (or batch of days), build a bounded prompt from
   the profile and everything already accepted this run
2. Call the generation service under the day attempt policy: each retry
   asks for less output at a cooler temperature
3. Classify, extract and coerce the response; repair incomplete JSON once
4. Map meals onto Breakfast/Lunch/Dinner and pick one non-duplicate item
   per slot against everything accepted so far
5. Regenerate any slot that had no acceptable candidate
6. After all days: sweep the whole plan for duplicates, worst first

Day failures are absorbed (the plan comes back partial with diagnostics).
A 429 stops the run. Only a run that produced zero days raises, after one
health-check call has told a service problem apart from a content problem.

All calls are made sequentially; the client enforces the minimum interval
between them.

Usage:
    generator = PlanGenerator(GeminiClient(), progress_callback=on_day_done)
    plan = await generator.generate_plan(profile)
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from attempt_policy import Attempt, AttemptPolicy, run_attempts
from config import (
    ATTEMPT_POLICY_PRESETS,
    GENERATION_DEFAULTS,
    MEAL_NAMES,
    WEEK_DAYS,
    get_gemini_config,
    get_generation_config,
)
from plan_errors import (
    DayGenerationFailed,
    PlanGenerationError,
    RateLimitError,
    TotalFailureError,
    TransportError,
)
from plan_models import Day, Item, Meal, MealPlan, Totals, UserProfile, normalize_meal_candidates
from prompts import HEALTH_CHECK_PROMPT, build_day_prompt, build_plan_response_schema, build_single_meal_prompt
from repair_service import RepairService
from response_parser import classify_response, coerce_to_item_shape, coerce_to_plan_shape, extract_json, needs_repair
from similarity import extract_tokens, max_similarity, normalize_title
from token_budget import TokenEstimator
from tools.logging_utils import get_logger, log_with_emoji

logger = get_logger(__name__)


class DayStatus(Enum):
    PENDING = "pending"
    GENERATING = "generating"
    PARSING = "parsing"
    REPAIRING = "repairing"
    DEDUPING = "deduping"
    REGENERATING_SLOT = "regenerating_slot"
    ACCEPTED = "accepted"
    FAILED = "failed"


# =============================================================================
# RUN STATE
# =============================================================================

@dataclass
class DedupContext:
    """Everything accepted so far in this run, in acceptance order."""
    used_titles: List[str] = field(default_factory=list)
    used_tokens: List[str] = field(default_factory=list)
    all_previous_items: List[Item] = field(default_factory=list)

    def has_title(self, title: str) -> bool:
        normalized = normalize_title(title)
        return any(normalize_title(t) == normalized for t in self.used_titles)

    def has_any_token(self, title: str) -> bool:
        return any(token in self.used_tokens for token in extract_tokens(title))

    def commit(self, item: Item) -> None:
        if not self.has_title(item.title):
            self.used_titles.append(item.title)
        for token in extract_tokens(item.title):
            if token not in self.used_tokens:
                self.used_tokens.append(token)
        self.all_previous_items.append(item)

    def avoid_titles(self) -> List[str]:
        return list(self.used_titles)

    def avoid_tokens(self) -> List[str]:
        return list(self.used_tokens)

    def mark(self) -> Tuple[int, int, int]:
        return len(self.used_titles), len(self.used_tokens), len(self.all_previous_items)

    def rollback(self, mark: Tuple[int, int, int]) -> None:
        """Forget everything committed since ``mark`` (used when a day fails)."""
        titles, tokens, items = mark
        del self.used_titles[titles:]
        del self.used_tokens[tokens:]
        del self.all_previous_items[items:]

    @classmethod
    def from_plan(cls, plan: MealPlan, exclude: Optional[Tuple[int, str]] = None) -> "DedupContext":
        """Context over every item in ``plan`` except the (day_index, meal_name) slot."""
        ctx = cls()
        for day_index, day in enumerate(plan.days):
            for meal in day.meals:
                if exclude and day_index == exclude[0] and meal.name.lower() == exclude[1].lower():
                    continue
                if meal.item:
                    ctx.commit(meal.item)
        return ctx


@dataclass
class SlotSelection:
    meal_name: str
    item: Optional[Item]
    similarity: float
    needs_regeneration: bool


@dataclass
class SlotResolution:
    item: Optional[Item]
    similarity: float
    # True when no candidate got under the duplicate threshold and the least
    # similar one was accepted anyway
    escaped: bool


@dataclass
class DuplicateConflict:
    day_index: int
    meal_name: str
    similarity: float
    similar_to: str


@dataclass
class DayProgress:
    day_label: str
    index: int
    total: int
    status: DayStatus


@dataclass
class GenerationReport:
    calls: int = 0
    repair_calls: int = 0
    repair_invocations: int = 0
    regenerations: int = 0
    sweep_replacements: int = 0
    escape_valve: List[Dict[str, Any]] = field(default_factory=list)
    failures: Dict[str, str] = field(default_factory=dict)
    status_history: Dict[str, List[DayStatus]] = field(default_factory=dict)
    rate_limited: bool = False
    diagnosis: Optional[str] = None

    @property
    def total_calls(self) -> int:
        return self.calls + self.repair_calls


def _default_policy(name: str, rows: Sequence[Dict[str, Any]]):
    return field(default_factory=lambda: AttemptPolicy.from_config(name, rows))


@dataclass
class GenerationSettings:
    day_policy: AttemptPolicy = _default_policy("day", ATTEMPT_POLICY_PRESETS["thorough"])
    batch_policy: AttemptPolicy = _default_policy("batch", GENERATION_DEFAULTS["batch_policy"])
    repair_policy: AttemptPolicy = _default_policy("repair", GENERATION_DEFAULTS["repair_policy"])
    single_meal_policy: AttemptPolicy = _default_policy("single_meal", GENERATION_DEFAULTS["single_meal_policy"])
    model_limit: int = TokenEstimator.DEFAULT_MODEL_LIMIT
    batch_size: int = GENERATION_DEFAULTS["batch_size"]
    avoid_title_limit: int = GENERATION_DEFAULTS["avoid_title_limit"]
    avoid_token_limit: int = GENERATION_DEFAULTS["avoid_token_limit"]
    unique_threshold: float = GENERATION_DEFAULTS["unique_threshold"]
    duplicate_threshold: float = GENERATION_DEFAULTS["duplicate_threshold"]
    regeneration_rounds: int = GENERATION_DEFAULTS["regeneration_rounds"]
    sweep_duplicates: bool = GENERATION_DEFAULTS["sweep_duplicates"]
    min_output_tokens: int = GENERATION_DEFAULTS["min_output_tokens"]

    @classmethod
    def from_config(cls) -> "GenerationSettings":
        """Build from data/config.yaml (generation + gemini sections)."""
        gen = get_generation_config()
        return cls(
            day_policy=AttemptPolicy.from_config(gen["day_policy_name"], gen["day_policy"]),
            batch_policy=AttemptPolicy.from_config("batch", gen["batch_policy"]),
            repair_policy=AttemptPolicy.from_config("repair", gen["repair_policy"]),
            single_meal_policy=AttemptPolicy.from_config("single_meal", gen["single_meal_policy"]),
            model_limit=int(get_gemini_config()["model_limit"]),
            batch_size=max(1, int(gen["batch_size"])),
            avoid_title_limit=int(gen["avoid_title_limit"]),
            avoid_token_limit=int(gen["avoid_token_limit"]),
            unique_threshold=float(gen["unique_threshold"]),
            duplicate_threshold=float(gen["duplicate_threshold"]),
            regeneration_rounds=max(1, int(gen["regeneration_rounds"])),
            sweep_duplicates=bool(gen["sweep_duplicates"]),
            min_output_tokens=int(gen["min_output_tokens"]),
        )


# =============================================================================
# GENERATOR
# =============================================================================

class PlanGenerator:
    """
    Generates a MealPlan through a generation client.

    The client only needs an async ``generate(prompt, attempt,
    response_schema=None)`` returning the raw generateContent response.
    """

    def __init__(self, client, settings: Optional[GenerationSettings] = None,
                 progress_callback: Optional[Callable[[DayProgress], None]] = None):
        self.client = client
        self.settings = settings or GenerationSettings.from_config()
        self.progress_callback = progress_callback
        self.repair_service = RepairService(
            client, self.settings.repair_policy,
            model_limit=self.settings.model_limit,
            min_output_tokens=self.settings.min_output_tokens,
        )
        self.report = GenerationReport()
        self._response_schema = build_plan_response_schema()

    # -------------------------------------------------------------------------
    # Whole plan
    # -------------------------------------------------------------------------

    async def generate_plan(self, profile: UserProfile,
                            target_days: Optional[Sequence[str]] = None) -> MealPlan:
        """
        Generate a plan for ``target_days`` (default: the full week).

        Days are added to the plan as each one finishes, so a 429 part way
        through a batch keeps the days already done.

        Returns:
            MealPlan with days in requested order; partial when some days
            failed (see plan.diagnostics / plan.partial_notice()). An empty
            ``target_days`` gives an empty plan without calling the service.

        Raises:
            TotalFailureError: no day could be produced
        """
        requested = WEEK_DAYS if target_days is None else target_days
        labels = list(dict.fromkeys(d.strip() for d in requested if d and d.strip()))
        self.report = GenerationReport(status_history={label: [DayStatus.PENDING] for label in labels})
        plan = MealPlan(requested_days=labels)
        if not labels:
            logger.warning("⚠️ No days requested, nothing to generate")
            return plan

        ctx = DedupContext()
        logger.info(f"🚀 Generating {len(labels)}-day plan (batch size {self.settings.batch_size}, "
                    f"day policy '{self.settings.day_policy.name}')")

        completed = 0

        def accept(label: str, day: Optional[Day]) -> None:
            nonlocal completed
            completed += 1
            if day is not None:
                plan.add_day(day)
            else:
                plan.diagnostics.append(f"{label}: {self.report.failures.get(label, 'not generated')}")
            self._notify(label, completed, len(labels))

        try:
            for chunk in self._chunks(labels):
                await self._generate_chunk(profile, chunk, ctx, accept)
        except RateLimitError as e:
            self._record_rate_limit(plan, e)

        if plan.days and self.settings.sweep_duplicates and not self.report.rate_limited:
            try:
                self.report.sweep_replacements = await self.sweep_duplicates(profile, plan)
            except RateLimitError as e:
                self._record_rate_limit(plan, e)

        self.report.repair_invocations = self.repair_service.invocations
        self.report.repair_calls = self.repair_service.calls

        if not plan.days:
            diagnosis = "rate_limited" if self.report.rate_limited else await self.diagnose()
            self.report.diagnosis = diagnosis
            logger.error(f"❌ No days generated (diagnosis: {diagnosis})")
            raise TotalFailureError(diagnosis, plan.diagnostics)

        logger.info(f"📊 Plan done: {len(plan.days)}/{len(labels)} days, {self.report.total_calls} calls, "
                    f"{self.report.repair_invocations} repairs, {self.report.regenerations} slot regenerations, "
                    f"{len(self.report.escape_valve)} escape-valve acceptances")
        return plan

    def _chunks(self, labels: List[str]) -> List[List[str]]:
        size = max(1, self.settings.batch_size)
        return [labels[i:i + size] for i in range(0, len(labels), size)]

    def _record_rate_limit(self, plan: MealPlan, error: RateLimitError) -> None:
        self.report.rate_limited = True
        logger.error(f"❌ Stopping run: {error}")
        plan.diagnostics.append(
            "Generation stopped: the service is rate limiting requests. "
            "Wait a minute, then regenerate to fill in the remaining days."
        )

    def _set_status(self, label: str, status: DayStatus) -> None:
        self.report.status_history.setdefault(label, []).append(status)
        logger.debug(f"🔍 {label}: {status.value}")

    def _notify(self, label: str, index: int, total: int) -> None:
        status = self.report.status_history.get(label, [DayStatus.PENDING])[-1]
        icon = "✅" if status == DayStatus.ACCEPTED else "⚠️"
        log_with_emoji(logger, f"{icon} Day {index}/{total} {label}: {status.value}")
        if self.progress_callback:
            self.progress_callback(DayProgress(day_label=label, index=index, total=total, status=status))

    async def _call(self, prompt: str, attempt: Attempt,
                    response_schema: Optional[Dict[str, Any]] = None) -> str:
        """One budgeted generation call, classified to text."""
        budget = TokenEstimator.adjust(prompt, attempt.max_output_tokens,
                                       self.settings.model_limit, self.settings.min_output_tokens)
        self.report.calls += 1
        response = await self.client.generate(prompt, attempt.with_max_output_tokens(budget), response_schema)
        return classify_response(response)

    # -------------------------------------------------------------------------
    # Days
    # -------------------------------------------------------------------------

    async def _generate_chunk(self, profile: UserProfile, labels: List[str], ctx: DedupContext,
                              accept: Callable[[str, Optional[Day]], None]) -> None:
        """Generate ``labels`` and hand each finished (or failed) day to ``accept`` in order."""
        if len(labels) == 1:
            accept(labels[0], await self._generate_day_safely(profile, labels[0], ctx))
            return

        batch = await self._try_batch(profile, labels, ctx) or {}
        for label in labels:
            raw_day = batch.get(label)
            if raw_day is None:
                accept(label, await self._generate_day_safely(profile, label, ctx))
                continue
            mark = ctx.mark()
            try:
                day = await self._finish_day(profile, label, raw_day, ctx)
            except DayGenerationFailed:
                ctx.rollback(mark)
                logger.warning(f"⚠️ {label} from batch unusable, generating it alone")
                day = await self._generate_day_safely(profile, label, ctx)
            except RateLimitError:
                ctx.rollback(mark)
                self._set_status(label, DayStatus.FAILED)
                self.report.failures[label] = "rate limited"
                raise
            accept(label, day)

    async def _try_batch(self, profile: UserProfile, labels: List[str],
                         ctx: DedupContext) -> Optional[Dict[str, Dict[str, Any]]]:
        """Generate several days in one call; None means fall back to day by day."""
        prompt = build_day_prompt(profile, labels, ctx.avoid_titles(), ctx.avoid_tokens(),
                                  self.settings.avoid_title_limit, self.settings.avoid_token_limit)
        estimate = TokenEstimator.estimate(prompt, self.settings.batch_policy.attempts[0].max_output_tokens,
                                           self.settings.model_limit)
        if not estimate.within_limit:
            logger.warning(f"⚠️ Batch {', '.join(labels)} would use {estimate.utilization_percent:.0f}% "
                           f"of the context window, generating day by day")
            return None

        for label in labels:
            self._set_status(label, DayStatus.GENERATING)

        async def attempt_batch(attempt: Attempt) -> Optional[Dict[str, Any]]:
            return await self._request_plan(profile, prompt, attempt, labels)

        try:
            outcome = await run_attempts(self.settings.batch_policy, attempt_batch, label=", ".join(labels))
        except RateLimitError:
            raise
        except PlanGenerationError as e:
            logger.warning(f"⚠️ Batch {', '.join(labels)} failed ({e}), generating day by day")
            return None
        if outcome.value is None:
            return None

        wanted = {label.lower(): label for label in labels}
        found: Dict[str, Dict[str, Any]] = {}
        for raw_day in outcome.value.get("days", []):
            if not isinstance(raw_day, dict):
                continue
            label = wanted.get(str(raw_day.get("day") or "").strip().lower())
            if label and label not in found:
                found[label] = raw_day
        missing = [label for label in labels if label not in found]
        if missing:
            logger.warning(f"⚠️ Batch response missing {', '.join(missing)}")
        return found

    async def _generate_day_safely(self, profile: UserProfile, label: str,
                                   ctx: DedupContext) -> Optional[Day]:
        """generate_day() with day-level failures absorbed into the report."""
        mark = ctx.mark()
        try:
            return await self.generate_day(profile, label, ctx)
        except RateLimitError:
            ctx.rollback(mark)
            self._set_status(label, DayStatus.FAILED)
            self.report.failures[label] = "rate limited"
            raise
        except PlanGenerationError as e:
            ctx.rollback(mark)
            self._set_status(label, DayStatus.FAILED)
            self.report.failures[label] = str(e)
            logger.error(f"❌ {label} failed: {e}")
            return None

    async def generate_day(self, profile: UserProfile, label: str, ctx: DedupContext) -> Day:
        """
        Generate, parse, repair and dedupe a single day.

        Raises:
            DayGenerationFailed: every attempt failed or a slot stayed empty
            RateLimitError / non-retryable PlanGenerationError from the service
        """
        self._set_status(label, DayStatus.GENERATING)
        prompt = build_day_prompt(profile, [label], ctx.avoid_titles(), ctx.avoid_tokens(),
                                  self.settings.avoid_title_limit, self.settings.avoid_token_limit)

        async def attempt_day(attempt: Attempt) -> Optional[Dict[str, Any]]:
            return await self._request_plan(profile, prompt, attempt, [label])

        outcome = await run_attempts(self.settings.day_policy, attempt_day, label=label)
        if outcome.value is None:
            raise DayGenerationFailed(label, outcome.failures)

        return await self._finish_day(profile, label, self._pick_day(outcome.value, label), ctx)

    async def _request_plan(self, profile: UserProfile, prompt: str, attempt: Attempt,
                            labels: List[str]) -> Optional[Dict[str, Any]]:
        text = await self._call(prompt, attempt, self._response_schema)
        if not text:
            return None

        for label in labels:
            self._set_status(label, DayStatus.PARSING)
        plan = coerce_to_plan_shape(extract_json(text))
        if not plan or not plan.get("days"):
            logger.warning(f"⚠️ Response for {', '.join(labels)} had no parseable days")
            return None

        if needs_repair(plan):
            for label in labels:
                self._set_status(label, DayStatus.REPAIRING)
            plan = await self.repair_service.repair(plan, profile)
        return plan

    @staticmethod
    def _pick_day(plan: Dict[str, Any], label: str) -> Dict[str, Any]:
        days = [d for d in plan["days"] if isinstance(d, dict)]
        for raw_day in days:
            if str(raw_day.get("day") or "").strip().lower() == label.lower():
                return raw_day
        return days[0] if days else {}

    async def _finish_day(self, profile: UserProfile, label: str, raw_day: Dict[str, Any],
                          ctx: DedupContext) -> Day:
        """Dedupe the day's candidates, regenerate empty slots, build the Day."""
        self._set_status(label, DayStatus.DEDUPING)
        selections = self.select_day_items(label, normalize_meal_candidates(raw_day), ctx)

        meals = []
        regenerated = False
        for selection in selections:
            item = selection.item
            if selection.needs_regeneration:
                self._set_status(label, DayStatus.REGENERATING_SLOT)
                resolution = await self.regenerate_slot(profile, label, selection.meal_name, ctx,
                                                        placeholder=selection.item)
                item = resolution.item
                regenerated = True
                if item is None:
                    raise DayGenerationFailed(label, [f"could not fill {selection.meal_name}"])
                ctx.commit(item)
                if resolution.escaped:
                    self._record_escape(label, selection.meal_name, resolution)
            meals.append(Meal(selection.meal_name, [item]))

        day = Day(
            day=label,
            meals=meals,
            summary=str(raw_day.get("summary") or "").strip(),
            totals=None if regenerated else Totals.from_dict(raw_day.get("totals")),
        )
        day.ensure_totals()
        self._set_status(label, DayStatus.ACCEPTED)
        return day

    def select_day_items(self, label: str, candidates: Dict[str, List[Item]],
                         ctx: DedupContext) -> List[SlotSelection]:
        """
        Pick one item per slot, in Breakfast/Lunch/Dinner order.

        A candidate is taken immediately when its title is new, none of its
        title tokens were used before and its similarity to everything
        accepted is under the unique threshold. Otherwise the least similar
        candidate strictly under the duplicate threshold is taken. Slots with
        neither are flagged for regeneration (keeping the least similar
        candidate as a fallback). Accepted items are committed to ``ctx``.
        """
        selections = []
        for meal_name in MEAL_NAMES:
            usable = [c for c in candidates.get(meal_name, []) if c.is_complete]
            if not usable:
                logger.info(f"🔄 {label} {meal_name}: no complete candidate")
                selections.append(SlotSelection(meal_name, None, 0.0, needs_regeneration=True))
                continue

            chosen, chosen_score = None, 0.0
            best, lowest = None, float("inf")
            for item in usable:
                score = 1.0 if ctx.has_title(item.title) else max_similarity(item, ctx.all_previous_items)[0]
                if score < self.settings.unique_threshold and not ctx.has_any_token(item.title):
                    chosen, chosen_score = item, score
                    break
                if score < lowest:
                    best, lowest = item, score

            if chosen is None and best is not None and lowest < self.settings.duplicate_threshold:
                chosen, chosen_score = best, lowest

            if chosen is not None:
                ctx.commit(chosen)
                selections.append(SlotSelection(meal_name, chosen, chosen_score, needs_regeneration=False))
            else:
                logger.info(f"🔄 {label} {meal_name}: '{best.title}' too similar ({lowest:.2f})")
                selections.append(SlotSelection(meal_name, best, lowest, needs_regeneration=True))
        return selections

    # -------------------------------------------------------------------------
    # Slots
    # -------------------------------------------------------------------------

    async def _request_item(self, profile: UserProfile, prompt: str, attempt: Attempt) -> Optional[Item]:
        text = await self._call(prompt, attempt)
        if not text:
            return None
        raw = coerce_to_item_shape(extract_json(text))
        if raw is None:
            return None
        item = Item.from_dict(raw)
        if item is not None and not item.is_complete:
            item = Item.from_dict(await self.repair_service.repair(raw, profile))
        return item if item is not None and item.is_complete else None

    async def regenerate_slot(self, profile: UserProfile, label: str, meal_name: str,
                              ctx: DedupContext, placeholder: Optional[Item] = None,
                              extra_avoid_titles: Sequence[str] = ()) -> SlotResolution:
        """
        Generate a replacement item for one slot.

        Up to ``regeneration_rounds`` single-meal requests; rounds after the
        first carry the "previous attempt was too similar" hint and avoid the
        rejected titles. The first result at or under the duplicate threshold
        wins. When none qualifies, the least similar candidate seen
        (including ``placeholder``) comes back with ``escaped`` set. Neither
        is committed to ``ctx`` nor recorded; the caller records an escape
        with _record_escape() once it actually uses the item.

        Returns:
            SlotResolution; item is None only when nothing usable came back
        """
        self.report.regenerations += 1
        avoid_titles = ctx.avoid_titles() + [t for t in extra_avoid_titles if t]
        rejected: List[Tuple[float, Item]] = []
        if placeholder is not None and placeholder.is_complete:
            rejected.append((max_similarity(placeholder, ctx.all_previous_items)[0], placeholder))

        for round_index in range(self.settings.regeneration_rounds):
            prompt = build_single_meal_prompt(
                profile, label, meal_name, avoid_titles, ctx.avoid_tokens(),
                retry_hint=round_index > 0,
                title_limit=self.settings.avoid_title_limit,
                token_limit=self.settings.avoid_token_limit,
            )

            async def attempt_item(attempt: Attempt) -> Optional[Item]:
                return await self._request_item(profile, prompt, attempt)

            try:
                outcome = await run_attempts(self.settings.single_meal_policy, attempt_item,
                                             label=f"{label} {meal_name}")
            except RateLimitError:
                raise
            except PlanGenerationError as e:
                logger.warning(f"⚠️ {label} {meal_name} regeneration stopped: {e}")
                break

            item = outcome.value
            if item is None:
                continue

            if ctx.has_title(item.title):
                score, similar_title = 1.0, item.title
            else:
                score, similar = max_similarity(item, ctx.all_previous_items)
                similar_title = similar.title if similar else ""
            if score <= self.settings.duplicate_threshold:
                logger.info(f"✅ {label} {meal_name}: regenerated '{item.title}' ({score:.2f})")
                return SlotResolution(item, score, escaped=False)

            logger.info(f"🔄 {label} {meal_name}: '{item.title}' still too similar to '{similar_title}' ({score:.2f})")
            rejected.append((score, item))
            avoid_titles.append(item.title)

        if not rejected:
            return SlotResolution(None, 0.0, escaped=False)

        score, item = min(rejected, key=lambda pair: pair[0])
        logger.warning(f"⚠️ {label} {meal_name}: falling back to '{item.title}' at similarity {score:.2f} "
                       f"after {self.settings.regeneration_rounds} regeneration rounds")
        return SlotResolution(item, score, escaped=True)

    def _record_escape(self, label: str, meal_name: str, resolution: SlotResolution) -> None:
        logger.warning(f"⚠️ {label} {meal_name}: accepted '{resolution.item.title}' through the escape valve "
                       f"(similarity {resolution.similarity:.2f})")
        self.report.escape_valve.append({
            "day": label, "meal": meal_name, "title": resolution.item.title,
            "similarity": round(resolution.similarity, 2),
        })

    async def regenerate_meal(self, profile: UserProfile, plan: MealPlan, day_index: int,
                              meal_name: str, extra_avoid_titles: Sequence[str] = ()) -> bool:
        """
        Replace one meal of a finished plan with a new, non-duplicate recipe.

        The current recipe's title is always avoided. An escape-valve result
        only replaces the meal when it is less similar than the current one.

        Returns:
            True if the meal was replaced

        Raises:
            IndexError / ValueError: unknown day index or meal name
            RateLimitError: the service is rate limiting
        """
        day = plan.days[day_index]
        meal = day.meal(meal_name)
        if meal is None:
            raise ValueError(f"{day.day} has no meal named '{meal_name}'")

        ctx = DedupContext.from_plan(plan, exclude=(day_index, meal.name))
        current = meal.item
        avoid = ([current.title] if current else []) + list(extra_avoid_titles)
        resolution = await self.regenerate_slot(profile, day.day, meal.name, ctx, extra_avoid_titles=avoid)
        if resolution.item is None:
            return False
        if resolution.escaped and current is not None:
            if resolution.similarity >= max_similarity(current, ctx.all_previous_items)[0]:
                return False

        meal.items = [resolution.item]
        day.totals = day.compute_totals()
        if resolution.escaped:
            self._record_escape(day.day, meal.name, resolution)
        logger.info(f"✅ Replaced {day.day} {meal.name} with '{resolution.item.title}'")
        return True

    # -------------------------------------------------------------------------
    # Whole-plan sweep
    # -------------------------------------------------------------------------

    def find_duplicates(self, plan: MealPlan) -> List[DuplicateConflict]:
        """Items above the duplicate threshold against any earlier item, in plan order."""
        seen: List[Item] = []
        conflicts = []
        for day_index, day in enumerate(plan.days):
            for meal in day.meals:
                item = meal.item
                if item is None:
                    continue
                score, similar = max_similarity(item, seen)
                if score > self.settings.duplicate_threshold:
                    conflicts.append(DuplicateConflict(day_index, meal.name, score, similar.title))
                else:
                    seen.append(item)
        return conflicts

    async def sweep_duplicates(self, profile: UserProfile, plan: MealPlan) -> int:
        """
        Regenerate duplicate meals across the whole plan, highest similarity first.

        Returns:
            Number of meals replaced
        """
        conflicts = sorted(self.find_duplicates(plan), key=lambda c: c.similarity, reverse=True)
        if not conflicts:
            return 0

        logger.info(f"🔄 Sweep found {len(conflicts)} duplicate meal(s)")
        replaced = 0
        for conflict in conflicts:
            if await self.regenerate_meal(profile, plan, conflict.day_index, conflict.meal_name,
                                          extra_avoid_titles=[conflict.similar_to]):
                replaced += 1
        return replaced

    # -------------------------------------------------------------------------
    # Diagnostics
    # -------------------------------------------------------------------------

    async def diagnose(self) -> str:
        """
        One minimal call to classify a total failure.

        Returns:
            'rate_limited', 'auth_or_config', 'service_unreachable' or
            'content_or_complexity' (the service answered, so the prompts
            were the problem)
        """
        self.report.calls += 1
        try:
            response = await self.client.generate(HEALTH_CHECK_PROMPT, Attempt(max_output_tokens=64, temperature=0.0))
            classify_response(response)
        except RateLimitError:
            return "rate_limited"
        except TransportError as e:
            return "auth_or_config" if e.is_auth_error else "service_unreachable"
        except PlanGenerationError as e:
            logger.info(f"🔍 Health check answered with {e}")
        return "content_or_complexity"

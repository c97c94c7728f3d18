#!/usr/bin/env python3
"""
Perfect Plate Orchestrator - Meal Plan Generation Pipeline
==========================================================

Main entry point for the meal planner.

Runs the full pipeline:
1. Validates configuration and the Gemini connection
2. Loads the user profile (YAML file and/or command-line flags)
3. Generates the plan day by day with deduplication and repair
4. Prints the plan (and optional grocery list), writes JSON output

USAGE:
    python orchestrator.py --profile profile.yaml
    python orchestrator.py --age 34 --goal "lose weight" --diet vegetarian
    python orchestrator.py --profile profile.yaml --days Monday,Tuesday --output plan.json --grocery
    python orchestrator.py --help
"""

import argparse
import asyncio
import json
import sys
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from config import WEEK_DAYS, validate_all
from gemini_client import GeminiClient
from grocery_list import build_grocery_groups
from plan_errors import TotalFailureError
from plan_generator import PlanGenerator
from plan_models import MealPlan, UserProfile, explain_plan
from tools.logging_utils import get_logger
from tools.progress_ui import PlanProgressUI

logger = get_logger(__name__)


# =============================================================================
# PROGRESS DISPLAY UTILITIES
# =============================================================================

def print_header():
    """Print fancy header for the orchestrator."""
    print("\n" + "═" * 60)
    print("🍽️  PERFECT PLATE MEAL PLANNER")
    print("═" * 60)


def print_step(step_num: int, total_steps: int, message: str):
    """Print step progress indicator."""
    print(f"\n[Step {step_num}/{total_steps}] {message}")


def print_error(step_name: str, error_message: str):
    """Print error message and exit."""
    logger.critical(f"❌ ERROR in {step_name}: {error_message}")
    print("\n" + "═" * 60)
    print(f"❌ ERROR in {step_name}")
    print("═" * 60)
    print(f"\n{error_message}\n")
    sys.exit(1)


# =============================================================================
# INPUTS
# =============================================================================

def parse_days(value: Optional[str]) -> List[str]:
    """
    Parse a comma-separated day list, keeping the caller's order.

    Names are matched case-insensitively against the week; unknown names
    abort with an error.
    """
    if not value:
        return list(WEEK_DAYS)

    by_name = {d.lower(): d for d in WEEK_DAYS}
    days = []
    for raw in value.split(","):
        name = raw.strip().lower()
        if not name:
            continue
        if name not in by_name:
            print_error("Arguments", f"Unknown day: {raw.strip()}\nUse names like Monday,Wednesday")
        if by_name[name] not in days:
            days.append(by_name[name])
    return days or list(WEEK_DAYS)


def load_profile(args: argparse.Namespace) -> UserProfile:
    """Profile from --profile YAML, overridden by any individual flags."""
    data: Dict[str, Any] = {}
    if args.profile:
        path = Path(args.profile)
        if not path.exists():
            print_error("Profile", f"Profile file not found: {path}")
        try:
            with open(path, 'r') as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            print_error("Profile", f"Invalid YAML in {path}: {e}")
        if not isinstance(data, dict):
            print_error("Profile", f"{path} must contain a mapping of profile fields")

    overrides = {
        "age": args.age,
        "gender": args.gender,
        "ethnicity": args.ethnicity,
        "medical_conditions": args.conditions,
        "fitness_goal": args.goal,
        "exclusions": args.exclusions,
        "dietary_prefs": [p.strip() for p in args.diet.split(",") if p.strip()] if args.diet else None,
    }
    data.update({k: v for k, v in overrides.items() if v is not None})
    return UserProfile.from_dict(data)


def run_validation(skip_validation: bool) -> bool:
    """Validate configuration and the Gemini connection unless skipped."""
    if skip_validation:
        logger.warning("⚠️  Skipping validation (--skip-validation flag set)")
        return True

    print_step(0, 3, "🔍 Validating environment...")
    validation_start = time.time()
    if not validate_all():
        print_error("Validation", "System validation failed. Please fix the errors above.")
    print(f"✅ Validation complete ({time.time() - validation_start:.1f}s)")
    return True


# =============================================================================
# OUTPUT
# =============================================================================

def print_grocery_list(plan: MealPlan):
    groups = build_grocery_groups(plan)
    if not groups:
        print("Generate a plan first.")
        return
    print("\n🛒 GROCERY LIST")
    for group in groups:
        print(f"\n{group.category}")
        for entry in group.items:
            print(f"  • {entry.label}")


def write_output(plan: MealPlan, output: str):
    path = Path(output)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, 'w') as f:
        json.dump(plan.to_dict(), f, indent=2, ensure_ascii=False)
    logger.info(f"✅ Plan written to {path}")
    print(f"📄 Plan saved to: {path}")


# =============================================================================
# MAIN
# =============================================================================

async def run_generation(profile: UserProfile, days: List[str]) -> MealPlan:
    """Generate the plan with live progress; exits 1 on total failure."""
    ui = PlanProgressUI()
    client = GeminiClient()
    generator = PlanGenerator(client, progress_callback=ui.on_day)

    ui.start_plan(days)
    try:
        plan = await generator.generate_plan(profile, days)
    except TotalFailureError as e:
        ui.finish_plan()
        details = "\n".join(f"  - {d}" for d in e.diagnostics)
        print_error("Generation", f"{e}" + (f"\n\nDetails:\n{details}" if details else ""))
    finally:
        await client.close()

    ui.finish_plan()
    ui.show_plan(plan)

    report = generator.report
    logger.info(f"📊 {report.total_calls} calls ({report.repair_calls} repair), "
                f"{report.regenerations} slot regenerations, {report.sweep_replacements} sweep replacements")
    for accepted in report.escape_valve:
        print(f"ℹ️  {accepted['day']} {accepted['meal']}: kept '{accepted['title']}' "
              f"(similar to an earlier meal, {accepted['similarity']:.2f})")
    return plan


async def main():
    """Main orchestration function - async for proper event loop management."""
    parser = argparse.ArgumentParser(
        description="AI-powered personalized meal plan generator",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python orchestrator.py --profile profile.yaml
  python orchestrator.py --age 34 --goal "lose weight" --diet vegetarian,halal
  python orchestrator.py --profile profile.yaml --days Monday,Tuesday --grocery
  python orchestrator.py --skip-validation  # Skip the Gemini health check (faster)
        """
    )

    parser.add_argument("--profile", help="YAML file with profile fields (age, gender, fitnessGoal, ...)")
    parser.add_argument("--age", type=int, help="Age in years")
    parser.add_argument("--gender", help="Gender")
    parser.add_argument("--ethnicity", help="Cultural background for cuisine choices")
    parser.add_argument("--conditions", help="Medical conditions (free text)")
    parser.add_argument("--goal", help="Fitness goal (free text)")
    parser.add_argument("--exclusions", help="Foods to exclude (free text)")
    parser.add_argument("--diet", help="Comma-separated dietary preferences")
    parser.add_argument(
        "--days",
        help="Comma-separated days to generate, in order (default: Monday..Sunday)"
    )
    parser.add_argument("--output", help="Write the plan JSON to this file")
    parser.add_argument("--grocery", action="store_true", help="Print the grouped grocery list")
    parser.add_argument(
        "--skip-validation",
        action="store_true",
        help="Skip configuration and Gemini health checks"
    )

    args = parser.parse_args()
    start_time = time.time()

    print_header()
    run_validation(args.skip_validation)

    print_step(1, 3, "Loading profile...")
    profile = load_profile(args)
    days = parse_days(args.days)

    print_step(2, 3, f"Generating {len(days)}-day plan...")
    plan = await run_generation(profile, days)

    print_step(3, 3, "Finishing up...")
    summary, highlights = explain_plan(plan, profile)
    print(f"\n{summary}")
    for line in highlights:
        print(f"  • {line}")

    if args.grocery:
        print_grocery_list(plan)
    if args.output:
        write_output(plan, args.output)

    print("\n" + "═" * 60)
    status = "✅ SUCCESS" if plan.is_complete else "⚠️  PARTIAL PLAN"
    print(f"{status}! Total time: {int(time.time() - start_time)} seconds")
    print("═" * 60 + "\n")


def cli():
    """Console script entry point."""
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\n\n⚠️  Interrupted by user")
        sys.exit(130)


if __name__ == "__main__":
    cli()

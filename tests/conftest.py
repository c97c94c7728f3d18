"""
Pytest Configuration and Fixtures
=================================

Provides shared fixtures for the test suite:
- Scripted fake generation client (no network)
- Sample user profile
- Generation settings with the default thresholds

SAFETY: No test talks to the real generation service.
"""

import pytest

from fakes import FakeGenerationClient


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def fake_client():
    """Fresh scripted client per test."""
    return FakeGenerationClient()


@pytest.fixture
def profile():
    from plan_models import UserProfile

    return UserProfile.from_dict({
        "age": 34,
        "gender": "female",
        "ethnicity": "Levantine",
        "medicalConditions": "",
        "fitnessGoal": "lose weight",
        "exclusions": "",
        "dietaryPrefs": ["high-protein"],
    })


@pytest.fixture
def settings():
    """Thorough day policy, single-day batches, sweep enabled."""
    from plan_generator import GenerationSettings

    return GenerationSettings()


# =============================================================================
# Test Markers
# =============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "readonly: marks test as read-only (no files or services touched)"
    )
    config.addinivalue_line(
        "markers", "slow: marks test as slow (may take >10 seconds)"
    )

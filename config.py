"""
Configuration module for the Perfect Plate meal plan generator
==============================================================

This module centralizes all configuration for the plan generation pipeline:
- Gemini generateContent API (directly or through the site proxy)
- Generation policies (attempt tables, batching, dedup thresholds)
- Logging (console + rotating file under data/logs)

CONFIGURATION:
- data/config.yaml: User-specific settings (model, proxy, generation tuning)
- data/secrets.yaml: Credentials (Gemini API key)

Usage:
    from config import GEMINI_MODEL, USER_CONFIG, validate_all

    # Validate the API key and model before running
    if not validate_all():
        exit(1)

SETUP REQUIRED:
    1. data/config.yaml is created from config.yaml.example on first import
    2. Edit it to choose your model and generation policy
    3. Set GEMINI_API_KEY (env var or data/secrets.yaml), or configure proxy_url
"""

import os
import sys
import shutil
import logging
from pathlib import Path
from typing import Optional, Dict, Any, List

import yaml


# =============================================================================
# USER CONFIGURATION LOADING (STRICT - NO FALLBACKS)
# =============================================================================

# Project root directory (where this file lives)
PROJECT_ROOT = Path(__file__).parent

# Data directory - THE canonical location for all runtime data
DATA_DIR = PROJECT_ROOT / "data"

CONFIG_PATH = DATA_DIR / "config.yaml"

SECRETS_PATH = DATA_DIR / "secrets.yaml"

REQUIRED_SECTIONS = ["gemini", "generation"]


def get_config_path() -> Path:
    """Get the config.yaml path. Always data/config.yaml."""
    return CONFIG_PATH


def _load_user_config() -> Dict[str, Any]:
    """
    Load user configuration from data/config.yaml.

    A missing config is created from config.yaml.example so a fresh checkout
    can run. Anything else that is wrong with the file fails immediately.

    Returns:
        Dict containing user configuration

    Raises:
        FileNotFoundError: If neither config.yaml nor the example exist
        ValueError: If YAML is invalid or missing required sections
    """
    config_path = CONFIG_PATH

    if not config_path.exists():
        example_path = PROJECT_ROOT / "config.yaml.example"
        if example_path.exists():
            DATA_DIR.mkdir(parents=True, exist_ok=True)
            shutil.copy2(example_path, config_path)
            print(f"[config] Created {config_path} from config.yaml.example")
        else:
            raise FileNotFoundError(
                f"\n{'='*60}\n"
                f"ERROR: config.yaml not found\n"
                f"{'='*60}\n"
                f"Expected location: {config_path}\n"
                f"Also missing: {example_path}\n"
                f"Please reinstall or restore config.yaml.example.\n"
                f"{'='*60}"
            )

    try:
        with open(config_path, 'r') as f:
            config = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ValueError(
            f"\n{'='*60}\n"
            f"ERROR: config.yaml has invalid YAML syntax\n"
            f"{'='*60}\n"
            f"File: {config_path}\n"
            f"Error: {e}\n"
            f"{'='*60}"
        ) from e

    if config is None:
        raise ValueError(
            f"\n{'='*60}\n"
            f"ERROR: config.yaml is empty\n"
            f"{'='*60}\n"
            f"File: {config_path}\n"
            f"Please copy config.yaml.example and customize it.\n"
            f"{'='*60}"
        )

    missing_sections = [s for s in REQUIRED_SECTIONS if s not in config]
    if missing_sections:
        raise ValueError(
            f"\n{'='*60}\n"
            f"ERROR: config.yaml missing required sections\n"
            f"{'='*60}\n"
            f"Missing: {missing_sections}\n"
            f"Required sections: {REQUIRED_SECTIONS}\n"
            f"{'='*60}"
        )

    if not isinstance(config["generation"], dict) or not isinstance(config["gemini"], dict):
        raise ValueError(
            f"\n{'='*60}\n"
            f"ERROR: config.yaml sections 'gemini' and 'generation' must be mappings\n"
            f"{'='*60}"
        )

    return config


# Load user config at module initialization (FAIL FAST)
USER_CONFIG = _load_user_config()

# Use standard logging for config.py (foundational module)
logger = logging.getLogger(__name__)


def reload_user_config() -> Dict[str, Any]:
    """
    Reload data/config.yaml into the in-memory USER_CONFIG.

    Modules that imported individual constants (e.g., GEMINI_MODEL) keep the
    older values; read tunable knobs through get_config_value() at runtime.
    """
    global USER_CONFIG, GEMINI_MODEL

    USER_CONFIG = _load_user_config()
    GEMINI_MODEL = os.getenv("GEMINI_MODEL", "").strip() or USER_CONFIG["gemini"].get("model", DEFAULT_GEMINI_MODEL)

    logger.info("🔄 User config reloaded from disk")
    return USER_CONFIG


# =============================================================================
# UNIFIED SECRETS MANAGEMENT
# =============================================================================
"""
Centralized credential storage in data/secrets.yaml.
Environment variables take priority over file-based secrets.
"""


def load_secrets() -> Dict[str, Any]:
    """
    Load secrets from data/secrets.yaml.

    Returns:
        dict with key 'gemini_api_key' (may be None)
        Returns empty dict if file doesn't exist or can't be read
    """
    if not SECRETS_PATH.exists():
        return {}

    try:
        with open(SECRETS_PATH, 'r') as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        logger.warning(f"⚠️ Failed to load secrets from {SECRETS_PATH}: {e}")
        return {}

    return {
        'gemini_api_key': (data.get('gemini') or {}).get('api_key'),
    }


def save_secrets(gemini_api_key: str = None) -> None:
    """
    Save secrets to data/secrets.yaml, preserving unrelated entries.

    Args:
        gemini_api_key: Gemini API key (optional)
    """
    DATA_DIR.mkdir(parents=True, exist_ok=True)

    existing = {}
    if SECRETS_PATH.exists():
        with open(SECRETS_PATH, 'r') as f:
            existing = yaml.safe_load(f) or {}

    existing.setdefault('gemini', {})
    if gemini_api_key is not None:
        existing['gemini']['api_key'] = gemini_api_key

    with open(SECRETS_PATH, 'w') as f:
        yaml.safe_dump(existing, f, default_flow_style=False)

    logger.info(f"✅ Secrets saved to {SECRETS_PATH}")


def load_gemini_api_key() -> Optional[str]:
    """
    Load the Gemini API key from environment variable or secrets file.

    Priority order (ENV VAR IS SOURCE OF TRUTH):
    1. Environment variable GEMINI_API_KEY (preferred)
    2. File: data/secrets.yaml (fallback)

    Returns:
        str: The API key if found, None otherwise
    """
    env_key = os.getenv("GEMINI_API_KEY", "").strip()
    if env_key:
        logger.debug("🔑 Using GEMINI_API_KEY from env var")
        return env_key

    file_key = load_secrets().get('gemini_api_key')
    if file_key:
        logger.debug(f"🔑 Using GEMINI_API_KEY from {SECRETS_PATH}")
        return file_key

    logger.debug("No GEMINI_API_KEY found in env var or data/secrets.yaml")
    return None


def reload_credentials() -> None:
    """Reload credentials after save_secrets() without restarting."""
    global GEMINI_API_KEY

    GEMINI_API_KEY = load_gemini_api_key()
    logger.info("🔄 Credentials reloaded from secrets")


# =============================================================================
# GEMINI CONFIGURATION
# =============================================================================
"""
The Gemini generateContent endpoint produces the plan JSON. Requests either go
straight to Google (API key in the query string) or to a proxy that receives
{"endpoint": ..., "body": ...} and holds the key server-side.
"""

DEFAULT_GEMINI_MODEL = "gemini-1.5-flash"

GEMINI_API_BASES = {
    "generativelanguage": "https://generativelanguage.googleapis.com/v1/models",
    "vertex": "https://aiplatform.googleapis.com/v1/publishers/google/models",
}

GEMINI_MODEL = os.getenv("GEMINI_MODEL", "").strip() or USER_CONFIG["gemini"].get("model", DEFAULT_GEMINI_MODEL)
GEMINI_API_KEY = load_gemini_api_key()


def get_gemini_config() -> Dict[str, Any]:
    """
    Get Gemini connection settings with defaults applied.

    Returns config dict with keys:
    - model, api_endpoint, api_base, proxy_url
    - model_limit, min_request_interval, request_timeout
    """
    defaults = {
        'model': GEMINI_MODEL,
        'api_endpoint': 'generativelanguage',
        'proxy_url': None,
        'model_limit': 8192,
        'min_request_interval': 2.0,
        'request_timeout': 60,
    }
    merged = {**defaults, **USER_CONFIG.get('gemini', {})}
    merged['model'] = GEMINI_MODEL

    if merged['api_endpoint'] not in GEMINI_API_BASES:
        logger.warning(f"⚠️ Unknown api_endpoint '{merged['api_endpoint']}', using 'generativelanguage'")
        merged['api_endpoint'] = 'generativelanguage'
    merged['api_base'] = GEMINI_API_BASES[merged['api_endpoint']]
    return merged


# =============================================================================
# GENERATION CONFIGURATION
# =============================================================================
"""
Controls how days are requested, retried, deduplicated and repaired.
"""

# Canonical day order
WEEK_DAYS = ["Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday"]

# Canonical meal slots per day
MEAL_NAMES = ["Breakfast", "Lunch", "Dinner"]

# Each row is one call; later rows ask for less output and a cooler sampler.
ATTEMPT_POLICY_PRESETS = {
    "thorough": [
        {"max_output_tokens": 2200, "temperature": 0.7, "use_schema": True},
        {"max_output_tokens": 1600, "temperature": 0.4, "use_schema": True},
        {"max_output_tokens": 1400, "temperature": 0.3},
    ],
    "conservative": [
        {"max_output_tokens": 1200, "temperature": 0.5, "use_schema": True},
    ],
}

GENERATION_DEFAULTS = {
    "day_policy": "thorough",
    "batch_policy": [
        {"max_output_tokens": 3000, "temperature": 0.7, "use_schema": True},
        {"max_output_tokens": 2400, "temperature": 0.4},
    ],
    "repair_policy": [
        {"max_output_tokens": 2000, "temperature": 0.2},
    ],
    "single_meal_policy": [
        {"max_output_tokens": 1500, "temperature": 0.7},
        {"max_output_tokens": 1200, "temperature": 0.5},
    ],
    "batch_size": 1,
    "avoid_title_limit": 20,
    "avoid_token_limit": 30,
    "unique_threshold": 0.3,
    "duplicate_threshold": 0.5,
    "regeneration_rounds": 2,
    "sweep_duplicates": True,
    "min_output_tokens": 300,
    "safe_utilization": 0.75,
}

# Timeout Configuration
PIPELINE_TIMEOUTS = {
    "request": 60,           # per generateContent call
    "health_check": 15,      # list-models validation
}

# Usage thresholds for token logging (total tokens per response)
TOKEN_USAGE_THRESHOLDS = {
    "elevated": 6000,
    "high": 7000,
}


def get_generation_config() -> Dict[str, Any]:
    """
    Get generation settings from config.yaml merged over GENERATION_DEFAULTS.

    A named day_policy is resolved through ATTEMPT_POLICY_PRESETS; an inline
    list of attempt rows is used as-is.
    """
    merged = {**GENERATION_DEFAULTS, **USER_CONFIG.get("generation", {})}

    day_policy = merged["day_policy"]
    if isinstance(day_policy, str):
        if day_policy not in ATTEMPT_POLICY_PRESETS:
            logger.warning(f"⚠️ Unknown day_policy '{day_policy}', using 'thorough'")
            day_policy = "thorough"
        merged["day_policy_name"] = day_policy
        merged["day_policy"] = ATTEMPT_POLICY_PRESETS[day_policy]
    else:
        merged["day_policy_name"] = "custom"

    return merged


def get_config_value(section: str, key: str, default=None):
    """
    Get a configuration value by section and key with graceful degradation.

    Args:
        section: 'gemini', 'generation', 'timeouts' or 'token_usage'
        key: Configuration key name
        default: Default value if not found

    Returns:
        Configuration value or default
    """
    sections = {
        "gemini": get_gemini_config,
        "generation": get_generation_config,
        "timeouts": lambda: PIPELINE_TIMEOUTS,
        "token_usage": lambda: TOKEN_USAGE_THRESHOLDS,
    }
    loader = sections.get(section)
    if loader is None:
        logger.warning(f"⚠️  Unknown configuration section '{section}', using default for {key}: {default}")
        return default
    return loader().get(key, default)


# =============================================================================
# LOGGING CONFIGURATION
# =============================================================================
"""Centralized logging configuration for all modules."""
LOGGING_CONFIG = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "standard": {
            "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        },
        "detailed": {
            "format": "%(asctime)s - %(name)s - %(levelname)s - %(filename)s:%(lineno)d - %(message)s"
        }
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "level": USER_CONFIG.get("logging", {}).get("console_level", "INFO"),
            "formatter": "standard",
            "stream": "ext://sys.stdout"
        },
        "file": {
            "class": "logging.handlers.RotatingFileHandler",
            "level": "DEBUG",
            "formatter": "detailed",
            "filename": str(DATA_DIR / "logs" / "perfect_plate.log"),
            "maxBytes": 10485760,  # 10MB
            "backupCount": 5
        }
    },
    "root": {
        "level": "DEBUG",
        "handlers": ["console", "file"]
    }
}


# =============================================================================
# VALIDATION FUNCTIONS
# =============================================================================

def validate_gemini_connection() -> bool:
    """
    Validate that the Gemini API key works and the configured model exists.

    Lists the models visible to the key and checks GEMINI_MODEL is among them.
    When a proxy is configured the key lives server-side, so only the proxy
    URL is checked for presence.

    Returns:
        bool: True if generation requests can be made, False otherwise
    """
    gemini = get_gemini_config()

    if gemini.get('proxy_url'):
        logger.info(f"✅ Using generation proxy: {gemini['proxy_url']}")
        return True

    if not GEMINI_API_KEY:
        logger.error("❌ ERROR: GEMINI_API_KEY not found!")
        logger.error("   Please set it via GEMINI_API_KEY env var or in data/secrets.yaml")
        return False

    import requests

    try:
        response = requests.get(
            gemini['api_base'],
            params={"key": GEMINI_API_KEY},
            timeout=PIPELINE_TIMEOUTS["health_check"],
        )
    except requests.exceptions.ConnectionError:
        logger.error(f"❌ ERROR: Cannot connect to {gemini['api_base']}")
        logger.error("   Check your internet connection")
        return False
    except requests.exceptions.Timeout:
        logger.error(f"❌ ERROR: Gemini connection timed out after {PIPELINE_TIMEOUTS['health_check']} seconds")
        return False

    if response.status_code in (401, 403):
        logger.error(f"❌ ERROR: Gemini authentication failed ({response.status_code})")
        logger.error("   Check your GEMINI_API_KEY is valid")
        return False
    if response.status_code != 200:
        logger.error(f"❌ ERROR: Gemini returned status code {response.status_code}")
        return False

    available = [
        m.get("name", "").split("/")[-1]
        for m in response.json().get("models", [])
    ]
    if GEMINI_MODEL not in available:
        logger.error(f"❌ ERROR: Model '{GEMINI_MODEL}' is not available for this key")
        logger.error(f"   Available: {', '.join(sorted(available)[:10])}")
        return False

    logger.info("✅ Gemini connection successful")
    logger.info(f"✅ Using model: {GEMINI_MODEL}")
    return True


def validate_all() -> bool:
    """
    Validate system dependencies. The generation API is mandatory.

    Returns:
        bool: True if all dependencies are validated (exits otherwise)
    """
    logger.info("=" * 60)
    logger.info("🔍 VALIDATING SYSTEM DEPENDENCIES...")
    logger.info("=" * 60)

    if not validate_gemini_connection():
        logger.error("=" * 60)
        logger.error("❌ CRITICAL FAILURE: Gemini validation failed")
        logger.error("❌ FAST FAILURE: Plans cannot be generated - fix API key/model and restart")
        logger.error("=" * 60)
        sys.exit(1)

    logger.info("=" * 60)
    logger.info("✅ ALL DEPENDENCIES VALIDATED - SYSTEM READY!")
    logger.info("=" * 60)
    return True


def print_config_summary() -> None:
    """Print a summary of the current configuration."""
    gemini = get_gemini_config()
    generation = get_generation_config()

    print("\n" + "=" * 60)
    print("📋 CONFIGURATION SUMMARY")
    print("=" * 60)
    print(f"Model:              {gemini['model']} ({gemini['api_endpoint']})")
    print(f"API Key:            {'✓ Set' if GEMINI_API_KEY else '✗ Not set'}")
    print(f"Proxy:              {gemini['proxy_url'] or '-'}")
    print(f"Model Limit:        {gemini['model_limit']} tokens")
    print(f"Request Interval:   {gemini['min_request_interval']}s")
    print(f"Day Policy:         {generation['day_policy_name']} ({len(generation['day_policy'])} attempts)")
    print(f"Batch Size:         {generation['batch_size']} day(s) per request")
    print(f"Dedup Thresholds:   unique < {generation['unique_threshold']}, duplicate > {generation['duplicate_threshold']}")
    print("=" * 60 + "\n")


# =============================================================================
# MODULE SELF-TEST
# =============================================================================

if __name__ == "__main__":
    print_config_summary()
    validate_all()
    print("\n🎉 Gemini reachable - ready to generate plans!")
    sys.exit(0)

"""
Configuration loader for autopilot orchestration rules.
"""

import os
from pathlib import Path
from typing import Any, Optional

import yaml
from dotenv import load_dotenv

from autopilot.retry import RetryPolicy


PROJECT_ROOT = Path(__file__).parent.parent
DEFAULT_RULES_PATH = PROJECT_ROOT / "config" / "autopilot_rules.yaml"

load_dotenv(PROJECT_ROOT / ".env")

_cached_rules: Optional[dict[str, Any]] = None


def rules_path() -> Path:
    override = (os.getenv("AUTOPILOT_RULES_PATH") or "").strip()
    return Path(override) if override else DEFAULT_RULES_PATH


def load_rules(force_reload: bool = False) -> dict[str, Any]:
    """
    Load and parse autopilot_rules.yaml.

    Args:
        force_reload: If True, bypass cache and reload from disk

    Returns:
        Parsed configuration dictionary
    """
    global _cached_rules

    if _cached_rules is not None and not force_reload:
        return _cached_rules

    with open(rules_path(), "r", encoding="utf-8") as f:
        _cached_rules = yaml.safe_load(f) or {}

    return _cached_rules


def _section(name: str) -> dict[str, Any]:
    return load_rules().get(name, {}) or {}


def get_learning_rate() -> float:
    env = os.getenv("AUTOPILOT_LEARNING_RATE")
    if env:
        return float(env)
    return float(_section("learning").get("rate", 0.2))


def get_default_expected_value() -> float:
    return float(_section("learning").get("default_expected_value", 0.5))


def get_response_rewards() -> dict[str, float]:
    return {k: float(v) for k, v in _section("learning").get("response_rewards", {}).items()}


def get_company_size_ranges() -> list[int]:
    return list(_section("learning").get("company_size_ranges", [10, 50, 200, 1000, 5000]))


def get_retry_ceiling() -> int:
    return int(_section("nurturing").get("retry_ceiling", 3))


def get_task_due_hours() -> int:
    return int(_section("nurturing").get("task_due_hours", 24))


def get_response_window(channel: str) -> int:
    """Seconds to wait for a reply on a channel before escalating."""
    windows = _section("escalation").get("response_windows", {})
    return int(windows.get(channel, windows.get("default", 172800)))


def get_optimizer_settings() -> dict[str, Any]:
    """
    Returns:
        Dict with keys: defer_threshold, exploration_interval,
        max_attempts_per_action
    """
    opt = _section("optimizer")
    return {
        "defer_threshold": float(opt.get("defer_threshold", 0.25)),
        "exploration_interval": int(opt.get("exploration_interval", 3)),
        "max_attempts_per_action": int(opt.get("max_attempts_per_action", 3)),
    }


def get_scheduler_settings() -> dict[str, int]:
    """
    Returns:
        Dict with keys: delivery_interval_seconds, sweep_interval_seconds,
        worker_pool_size
    """
    sched = _section("scheduler")
    return {
        "delivery_interval_seconds": int(sched.get("delivery_interval_seconds", 300)),
        "sweep_interval_seconds": int(sched.get("sweep_interval_seconds", 86400)),
        "worker_pool_size": int(os.getenv("AUTOPILOT_WORKERS") or sched.get("worker_pool_size", 8)),
    }


def get_conflict_retry_policy() -> RetryPolicy:
    cfg = _section("store").get("conflict_retry", {})
    return RetryPolicy(
        max_retries=int(cfg.get("max_retries", 5)),
        base_delay=float(cfg.get("base_delay", 0.05)),
        max_delay=float(cfg.get("max_delay", 1.0)),
        exponential_factor=float(cfg.get("exponential_factor", 2.0)),
        jitter_factor=float(cfg.get("jitter_factor", 0.1)),
    )


def get_provider_settings() -> dict[str, Any]:
    providers = _section("providers")
    return {
        "default": os.getenv("AUTOPILOT_PROVIDER") or providers.get("default", "anthropic"),
        "timeout_seconds": float(providers.get("timeout_seconds", 60)),
        "max_retries": int(providers.get("max_retries", 2)),
    }


def get_ethical_boundaries() -> dict[str, list[str]]:
    """
    Returns:
        Dict with keys: prohibited_tactics, prohibited_content,
        prohibited_industries (all lower-cased)
    """
    raw = _section("ethical_boundaries")
    return {
        key: [str(item).lower() for item in raw.get(key, [])]
        for key in ("prohibited_tactics", "prohibited_content", "prohibited_industries")
    }


def get_state_backend() -> str:
    return (os.getenv("AUTOPILOT_STATE_BACKEND") or "memory").strip().lower()


def get_redis_url() -> str:
    return (os.getenv("REDIS_URL") or "").strip()


def get_audit_db_path() -> Path:
    override = (os.getenv("AUTOPILOT_AUDIT_DB") or "").strip()
    return Path(override) if override else PROJECT_ROOT / ".hive-mind" / "autopilot_audit.db"

"""
Configuration loading and validation for autobuild.

This module handles:
- Loading config.yaml from the project root
- Environment variable resolution (${VAR} syntax)
- Default values for every tunable threshold
- Caching of the loaded configuration
- Writing a single approved threshold change back to config.yaml

Every numeric policy constant (score weights, category boundaries, budget
ladder, verification attempt cap) lives here so the threshold optimizer
has something concrete to recommend changes against.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Optional

import yaml


class ConfigError(Exception):
    """Raised when configuration is invalid or cannot be loaded."""
    pass


DEFAULT_CONFIG_FILE = "config.yaml"


@dataclass
class ComplexityConfig:
    """Complexity scoring weights, category boundaries and resource cost model."""
    file_weight: int = 100                     # Score per file touched
    loc_weight: int = 1                        # Score per line of code
    dependency_weight: int = 50                # Score per dependency
    simple_max: int = 500                      # Highest score classified Simple
    medium_max: int = 1500                     # Highest score classified Medium
    base_context_cost: int = 10_000            # Tokens to read shared context
    file_read_cost: int = 3_000                # Tokens per file read
    implement_cost_per_line: int = 20          # Tokens per implemented line
    test_cost_per_line: int = 15               # Tokens per test line
    review_cost: int = 5_000                   # Fixed review overhead
    test_loc_ratio: float = 1.5                # Test LOC per implementation LOC
    max_split_attempts: int = 2                # Initial split plus one retry


@dataclass
class BudgetConfig:
    """Resource budget ladder (tokens)."""
    proceed_limit: int = 100_000               # Below this, implement directly
    ceiling: int = 150_000                     # Above this, refuse and decompose
    per_agent_ceiling: int = 150_000           # Per-item running cost ceiling
    session_budget: int = 200_000              # Gating budget for one session
    approaching_ratio: float = 0.75            # Fraction at which limits trip
    max_sub_units: int = 3                     # Sub-units for the middle zone


@dataclass
class VerificationConfig:
    """Verification retry loop and self-healing tolerances."""
    max_attempts: int = 3                      # Attempts before divergence
    coverage_target: float = 80.0              # Required coverage percentage
    coverage_tolerance: float = 5.0            # Shortfall downgraded to a disclosed gap
    flaky_window: int = 3                      # Attempts examined for flakiness
    flaky_min_failures: int = 2                # Failures within window to quarantine


DEFAULT_PHASE_MINUTES: dict[str, int] = {
    "PHASE0_INFRA": 15,
    "PHASE1_DEFINITION": 30,
    "PHASE1_5_DECOMPOSITION": 20,
    "PHASE2_ARCHITECTURE": 30,
    "PHASE3_IMPLEMENTATION": 240,
    "PHASE4_QA": 60,
    "PHASE5_VERIFICATION": 60,
    "PHASE6_LEARNING": 15,
}


@dataclass
class PhaseConfig:
    """Wall-clock budgets per phase, in minutes."""
    budget_minutes: dict[str, int] = field(default_factory=lambda: dict(DEFAULT_PHASE_MINUTES))

    def minutes_for(self, phase_name: str) -> int:
        """Budget for a phase; unknown phases get no limit (0)."""
        return self.budget_minutes.get(phase_name, 0)


@dataclass
class TrackerConfig:
    """Work item tracker backend."""
    backend: str = "local"                     # "local" or "github"
    repo: str = ""                             # owner/repo for the github backend
    label: str = "autobuild"                   # Label applied to every created item
    timeout_seconds: int = 30                  # gh command timeout


@dataclass
class AgentConfig:
    """Agent capability backend (Claude Code CLI)."""
    binary: str = "claude"                     # Path to claude binary
    max_turns: int = 10                        # Maximum conversation turns
    timeout_seconds: int = 900                 # Command timeout in seconds


@dataclass
class OptimizerConfig:
    """Threshold optimizer targets."""
    min_sample: int = 5                        # Minimum project records
    iqr_factor: float = 1.5                    # Outlier fence multiplier
    split_rate_target: float = 0.05            # Max tolerated Simple split rate
    extra_commit_target: float = 0.40          # Max tolerated Medium multi-commit rate
    extra_commit_threshold: int = 3            # Commits that count as "extra"
    near_boundary_ratio: float = 0.8           # Items above this share of a boundary are "near" it


@dataclass
class SessionConfig:
    """Run lock configuration."""
    stale_lock_minutes: int = 30               # Minutes before a lock is considered stale
    write_lock_timeout: float = 10.0           # Seconds to wait for the checkpoint write lock


@dataclass
class BuildConfig:
    """
    Main configuration for autobuild.

    This is the top-level config loaded from config.yaml.
    """
    repo_root: str = "."
    state_dir: str = ".autobuild"
    config_file: str = DEFAULT_CONFIG_FILE

    complexity: ComplexityConfig = field(default_factory=ComplexityConfig)
    budget: BudgetConfig = field(default_factory=BudgetConfig)
    verification: VerificationConfig = field(default_factory=VerificationConfig)
    phases: PhaseConfig = field(default_factory=PhaseConfig)
    tracker: TrackerConfig = field(default_factory=TrackerConfig)
    agent: AgentConfig = field(default_factory=AgentConfig)
    optimizer: OptimizerConfig = field(default_factory=OptimizerConfig)
    sessions: SessionConfig = field(default_factory=SessionConfig)

    def __post_init__(self) -> None:
        """Convert repo_root to an absolute path."""
        self.repo_root = str(Path(self.repo_root).absolute())

    @property
    def autobuild_path(self) -> Path:
        """Absolute path to the .autobuild directory."""
        return Path(self.repo_root) / self.state_dir

    @property
    def state_path(self) -> Path:
        """Directory holding checkpoint documents."""
        return self.autobuild_path / "state"

    @property
    def locks_path(self) -> Path:
        """Directory holding run locks."""
        return self.autobuild_path / "locks"

    @property
    def logs_path(self) -> Path:
        """Directory holding JSONL logs."""
        return self.autobuild_path / "logs"

    @property
    def history_path(self) -> Path:
        """Append-only project record file."""
        return self.autobuild_path / "history" / "projects.jsonl"

    @property
    def reports_path(self) -> Path:
        """Directory holding rendered reports."""
        return self.autobuild_path / "reports"

    @property
    def tracker_path(self) -> Path:
        """Item file used by the local tracker backend."""
        return self.autobuild_path / "tracker" / "items.json"

    @property
    def config_path(self) -> Path:
        """Absolute path to config.yaml."""
        return Path(self.repo_root) / self.config_file


# Module-level cache for the loaded configuration
_config_cache: Optional[BuildConfig] = None

_ENV_PATTERN = re.compile(r'\$\{([A-Za-z_][A-Za-z0-9_]*)\}')


def _resolve_env_vars(value: Any) -> Any:
    """
    Resolve ${VAR} references in strings, dicts and lists.

    Raises:
        ConfigError: If a referenced variable is not set.
    """
    if isinstance(value, str):
        def replace(match: re.Match) -> str:
            var_name = match.group(1)
            env_value = os.environ.get(var_name)
            if env_value is None:
                raise ConfigError(f"Environment variable ${{{var_name}}} is not set")
            return env_value

        return _ENV_PATTERN.sub(replace, value)

    if isinstance(value, dict):
        return {k: _resolve_env_vars(v) for k, v in value.items()}

    if isinstance(value, list):
        return [_resolve_env_vars(item) for item in value]

    return value


def _parse_section(cls: type, data: Any, section: str) -> Any:
    """
    Build a section dataclass from a mapping, rejecting unknown keys.

    Values are coerced to the type of the dataclass default so that a YAML
    `100000` lands as an int and `0.75` as a float.
    """
    if data is None:
        return cls()
    if not isinstance(data, dict):
        raise ConfigError(f"Section '{section}' must be a mapping")

    defaults = cls()
    known = {f.name for f in fields(cls)}
    unknown = set(data) - known
    if unknown:
        raise ConfigError(f"Unknown keys in '{section}': {', '.join(sorted(unknown))}")

    kwargs: dict[str, Any] = {}
    for key, raw in data.items():
        default = getattr(defaults, key)
        try:
            if isinstance(default, bool):
                kwargs[key] = bool(raw)
            elif isinstance(default, int):
                kwargs[key] = int(raw)
            elif isinstance(default, float):
                kwargs[key] = float(raw)
            else:
                kwargs[key] = raw
        except (TypeError, ValueError):
            raise ConfigError(f"{section}.{key} has invalid value: {raw!r}")
    return cls(**kwargs)


def _parse_phase_config(data: Any) -> PhaseConfig:
    """Parse per-phase minute budgets, merged over the defaults."""
    if data is None:
        return PhaseConfig()
    if not isinstance(data, dict):
        raise ConfigError("Section 'phases' must be a mapping")
    minutes = dict(DEFAULT_PHASE_MINUTES)
    for name, value in (data.get("budget_minutes") or {}).items():
        key = str(name).upper()
        if key not in DEFAULT_PHASE_MINUTES:
            raise ConfigError(f"Unknown phase in phases.budget_minutes: {name}")
        try:
            minutes[key] = int(value)
        except (TypeError, ValueError):
            raise ConfigError(f"phases.budget_minutes.{name} must be an integer")
    return PhaseConfig(budget_minutes=minutes)


def validate_config(config: BuildConfig) -> None:
    """
    Check cross-field invariants.

    Raises:
        ConfigError: If thresholds are inconsistent.
    """
    c = config.complexity
    if not 0 <= c.simple_max < c.medium_max:
        raise ConfigError("complexity.simple_max must be >= 0 and below complexity.medium_max")
    b = config.budget
    if not 0 < b.proceed_limit <= b.ceiling:
        raise ConfigError("budget.proceed_limit must be positive and not above budget.ceiling")
    if not 0 < b.approaching_ratio <= 1:
        raise ConfigError("budget.approaching_ratio must be in (0, 1]")
    if b.max_sub_units < 2:
        raise ConfigError("budget.max_sub_units must be at least 2")
    v = config.verification
    if v.max_attempts < 1:
        raise ConfigError("verification.max_attempts must be at least 1")
    if v.coverage_tolerance < 0 or v.coverage_tolerance > v.coverage_target:
        raise ConfigError("verification.coverage_tolerance must be within [0, coverage_target]")
    if config.tracker.backend not in ("local", "github"):
        raise ConfigError(f"tracker.backend must be 'local' or 'github', got {config.tracker.backend!r}")
    if config.tracker.backend == "github" and not config.tracker.repo:
        raise ConfigError("tracker.repo is required for the github backend")
    if config.sessions.write_lock_timeout <= 0:
        raise ConfigError("sessions.write_lock_timeout must be positive")
    if config.optimizer.min_sample < 1:
        raise ConfigError("optimizer.min_sample must be at least 1")


def config_from_dict(data: dict[str, Any], repo_root: Optional[str] = None) -> BuildConfig:
    """Build and validate a BuildConfig from an already-parsed mapping."""
    data = _resolve_env_vars(data or {})

    config = BuildConfig(
        repo_root=repo_root or data.get("repo_root", "."),
        state_dir=data.get("state_dir", ".autobuild"),
        complexity=_parse_section(ComplexityConfig, data.get("complexity"), "complexity"),
        budget=_parse_section(BudgetConfig, data.get("budget"), "budget"),
        verification=_parse_section(VerificationConfig, data.get("verification"), "verification"),
        phases=_parse_phase_config(data.get("phases")),
        tracker=_parse_section(TrackerConfig, data.get("tracker"), "tracker"),
        agent=_parse_section(AgentConfig, data.get("agent"), "agent"),
        optimizer=_parse_section(OptimizerConfig, data.get("optimizer"), "optimizer"),
        sessions=_parse_section(SessionConfig, data.get("sessions"), "sessions"),
    )
    validate_config(config)
    return config


def load_config(config_path: Optional[str] = None) -> BuildConfig:
    """
    Load configuration from config.yaml.

    Args:
        config_path: Optional path to config file. Defaults to ./config.yaml.

    Returns:
        BuildConfig: Loaded and validated configuration. The repo root is
        the directory containing the config file unless the file sets one.

    Raises:
        ConfigError: If config is invalid or cannot be loaded.
    """
    path = Path(config_path or DEFAULT_CONFIG_FILE)
    if not path.exists():
        raise ConfigError(f"Configuration file not found: {path}")

    try:
        with open(path, "r") as f:
            raw_data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in config file: {e}")

    if raw_data is None:
        raw_data = {}
    if not isinstance(raw_data, dict):
        raise ConfigError("Configuration file must contain a mapping")

    repo_root = raw_data.get("repo_root") or str(path.absolute().parent)
    config = config_from_dict(raw_data, repo_root=repo_root)
    config.config_file = path.name
    return config


def get_config(config_path: Optional[str] = None, force_reload: bool = False) -> BuildConfig:
    """
    Get the cached configuration, loading it if necessary.

    Raises:
        ConfigError: If config is invalid or cannot be loaded.
    """
    global _config_cache

    if _config_cache is None or force_reload:
        _config_cache = load_config(config_path)

    return _config_cache


def get_config_or_default(config_path: Optional[str] = None) -> BuildConfig:
    """
    Get configuration, falling back to defaults rooted at the current
    directory when no config file exists.

    Raises:
        ConfigError: If a config file exists but is invalid.
    """
    global _config_cache

    path = Path(config_path or DEFAULT_CONFIG_FILE)
    if _config_cache is None and not path.exists():
        _config_cache = BuildConfig(repo_root=str(path.absolute().parent))
        return _config_cache
    return get_config(config_path)


def clear_config_cache() -> None:
    """Clear the configuration cache. Useful for testing."""
    global _config_cache
    _config_cache = None


def set_config_value(config_path: str | Path, dotted_key: str, value: Any) -> dict[str, Any]:
    """
    Write one approved value into config.yaml.

    The change is validated by re-parsing the whole document before it is
    written, so an approved recommendation can never leave an unloadable
    config behind.

    Args:
        config_path: Path to config.yaml (created if missing).
        dotted_key: Section and key, e.g. "complexity.simple_max".
        value: New value.

    Returns:
        The updated raw mapping.

    Raises:
        ConfigError: If the key is malformed or the result fails validation.
    """
    path = Path(config_path)
    parts = dotted_key.split(".")
    if len(parts) < 2:
        raise ConfigError(f"Expected section.key, got {dotted_key!r}")

    data: dict[str, Any] = {}
    if path.exists():
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}

    node = data
    for part in parts[:-1]:
        node = node.setdefault(part, {})
        if not isinstance(node, dict):
            raise ConfigError(f"{dotted_key}: '{part}' is not a mapping")
    node[parts[-1]] = value

    config_from_dict(data, repo_root=str(path.absolute().parent))

    from autobuild.utils.fs import safe_write
    safe_write(path, yaml.safe_dump(data, sort_keys=False))
    clear_config_cache()
    return data

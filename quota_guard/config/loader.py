"""
Rate-limit rule configuration and loading.

Defines subject tiers, per-operation rules and the immutable rule table
consulted by the limiter.
"""

from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Dict, Iterable, Mapping, Optional, Tuple

import yaml


class Tier(Enum):
    """Service class of a subject, assigned outside this package."""
    BASE = "BASE"
    ELEVATED = "ELEVATED"
    UNLIMITED = "UNLIMITED"

    @classmethod
    def parse(cls, value) -> "Tier":
        """Parse a tier name case-insensitively.

        Raises:
            ValueError: If the name is not a known tier
        """
        if isinstance(value, Tier):
            return value
        if not isinstance(value, str):
            raise ValueError(f"tier must be a string, got {type(value).__name__}")
        try:
            return cls(value.strip().upper())
        except ValueError:
            valid_tiers = [tier.value for tier in cls]
            raise ValueError(f"Unknown tier '{value}', must be one of: {valid_tiers}")


@dataclass(frozen=True)
class RateLimitRule:
    """Maximum number of requests a tier may make within a window."""
    window: timedelta
    max_requests: int
    tier: Tier

    def __post_init__(self):
        """Validate window and request budget are positive."""
        if self.window <= timedelta(0):
            raise ValueError("window must be > 0")
        if self.max_requests <= 0:
            raise ValueError("max_requests must be > 0")

    @property
    def window_seconds(self) -> float:
        return self.window.total_seconds()


@dataclass(frozen=True)
class RuleTable:
    """Immutable mapping of operation name to its ordered rules.

    The first rule listed for an operation is the default for any tier
    without a rule of its own.
    """
    rules: Mapping[str, Tuple[RateLimitRule, ...]] = field(default_factory=dict)

    def __post_init__(self):
        frozen = {}
        for operation, rules in self.rules.items():
            rules = tuple(rules)
            if not rules:
                raise ValueError(f"Operation '{operation}' must define at least one rule")
            seen = set()
            for rule in rules:
                if rule.tier in seen:
                    raise ValueError(
                        f"Operation '{operation}' defines more than one rule for tier {rule.tier.value}"
                    )
                seen.add(rule.tier)
            frozen[operation] = rules
        object.__setattr__(self, "rules", MappingProxyType(frozen))

    @classmethod
    def from_rules(cls, rules: Mapping[str, Iterable[RateLimitRule]]) -> "RuleTable":
        return cls({operation: tuple(items) for operation, items in rules.items()})

    @property
    def operations(self) -> Tuple[str, ...]:
        return tuple(self.rules)

    def rules_for(self, operation: str) -> Tuple[RateLimitRule, ...]:
        return self.rules.get(operation, ())

    def resolve(self, operation: str, tier: Tier) -> Optional[RateLimitRule]:
        """Get the rule for an operation and tier.

        Args:
            operation: Operation name
            tier: Subject tier

        Returns:
            The rule declared for the tier, the operation's first rule when
            the tier has none, or None when the operation is unknown
        """
        rules = self.rules.get(operation)
        if not rules:
            return None
        for rule in rules:
            if rule.tier == tier:
                return rule
        return rules[0]


def _per_minute(base: int, elevated: int, unlimited: int) -> Tuple[RateLimitRule, ...]:
    minute = timedelta(seconds=60)
    return (
        RateLimitRule(window=minute, max_requests=base, tier=Tier.BASE),
        RateLimitRule(window=minute, max_requests=elevated, tier=Tier.ELEVATED),
        RateLimitRule(window=minute, max_requests=unlimited, tier=Tier.UNLIMITED),
    )


# Built once at import, never mutated
DEFAULT_RULE_TABLE = RuleTable({
    "generate-avatar": _per_minute(5, 20, 100),
    "download-avatar": _per_minute(30, 100, 500),
    "spotify-data": _per_minute(10, 10, 10),
})


def load_rule_table(path: str) -> RuleTable:
    """Load and validate a rate-limit rule table from a YAML file.

    Expected layout::

        operations:
          generate-avatar:
            - tier: BASE
              window_seconds: 60
              max_requests: 5

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated RuleTable

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Rate limit config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a dictionary")

    allowed_top_keys = {'operations'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    operations_data = raw_config['operations']
    if not isinstance(operations_data, dict):
        raise ValueError("'operations' must be a dictionary")

    rules: Dict[str, Tuple[RateLimitRule, ...]] = {}
    for operation, rule_list in operations_data.items():
        if not isinstance(rule_list, list) or not rule_list:
            raise ValueError(f"Operation '{operation}' must be a non-empty list of rules")
        rules[str(operation)] = tuple(
            _parse_rule(rule_data, f"operations.{operation}[{index}]")
            for index, rule_data in enumerate(rule_list)
        )

    return RuleTable(rules)


def _parse_rule(data: Dict, path: str) -> RateLimitRule:
    """Parse and validate a single rule entry.

    Raises:
        ValueError: If the rule is invalid
    """
    if not isinstance(data, dict):
        raise ValueError(f"{path} must be a dictionary")

    allowed_keys = {'tier', 'window_seconds', 'max_requests'}
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")

    for key in ('tier', 'window_seconds', 'max_requests'):
        if key not in data:
            raise ValueError(f"Missing required '{key}' in {path}")

    window_seconds = data['window_seconds']
    if isinstance(window_seconds, bool) or not isinstance(window_seconds, (int, float)) or window_seconds <= 0:
        raise ValueError(f"'window_seconds' in {path} must be > 0")

    max_requests = data['max_requests']
    if isinstance(max_requests, bool) or not isinstance(max_requests, int) or max_requests <= 0:
        raise ValueError(f"'max_requests' in {path} must be a positive integer")

    try:
        tier = Tier.parse(data['tier'])
    except ValueError as e:
        raise ValueError(f"'tier' in {path}: {e}")

    return RateLimitRule(
        window=timedelta(seconds=window_seconds),
        max_requests=max_requests,
        tier=tier
    )

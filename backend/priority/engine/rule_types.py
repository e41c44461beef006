# priority/engine/rule_types.py
"""
Rule Types
==========

Typed views over the JSON columns of OptimizationRule.

Each rule_type has its own condition and config dataclass. Parsing is strict:
unknown keys or wrong value types raise RuleEvaluationError, which the
registry turns into a ValidationError at write time and the scorer turns
into a skipped rule at evaluation time.

Rule types:
-----------
- deadline_based:   DeadlineConditions  / DeadlineConfig
- dependency_based: DependencyConditions / DependencyConfig
- pattern_based:    SignalConditions    / SignalConfig (historical aggregates)
- context_based:    SignalConditions    / SignalConfig (caller-supplied map)

Anything else parses to RawConditions / RawConfig. The payload is kept
untouched so rows written by a newer release survive a round trip, but the
scorer never fires them.

Matching:
---------
Every set clause yields one boolean. Trigger conditions match when all of
them hold (no clauses = always matches). Exclusion conditions match when any
of them holds (no clauses = never matches).
"""

from dataclasses import dataclass, field, fields
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Tuple

from priority.exceptions import RuleEvaluationError

RULE_DEADLINE = "deadline_based"
RULE_DEPENDENCY = "dependency_based"
RULE_PATTERN = "pattern_based"
RULE_CONTEXT = "context_based"
RULE_TYPES = (RULE_DEADLINE, RULE_DEPENDENCY, RULE_PATTERN, RULE_CONTEXT)
SIGNAL_RULE_TYPES = (RULE_PATTERN, RULE_CONTEXT)


# ---------------------------------------------------------------------------
# Value coercion
# ---------------------------------------------------------------------------


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _str_tuple(key: str, value: Any) -> Tuple[str, ...]:
    if not isinstance(value, (list, tuple)) or not all(isinstance(v, str) for v in value):
        raise RuleEvaluationError(f"'{key}' must be a list of strings, got {value!r}")
    return tuple(value)


def _number(key: str, value: Any, minimum: Optional[float] = None, maximum: Optional[float] = None) -> float:
    if not _is_number(value):
        raise RuleEvaluationError(f"'{key}' must be a number, got {value!r}")
    if minimum is not None and value < minimum:
        raise RuleEvaluationError(f"'{key}' must be >= {minimum}, got {value!r}")
    if maximum is not None and value > maximum:
        raise RuleEvaluationError(f"'{key}' must be <= {maximum}, got {value!r}")
    return float(value)


def _boolean(key: str, value: Any) -> bool:
    if not isinstance(value, bool):
        raise RuleEvaluationError(f"'{key}' must be true or false, got {value!r}")
    return value


def _number_map(key: str, value: Any) -> Dict[str, float]:
    if not isinstance(value, dict):
        raise RuleEvaluationError(f"'{key}' must be an object of signal -> number, got {value!r}")
    return {str(k): _number(f"{key}.{k}", v) for k, v in value.items()}


def _check_payload(payload: Any, allowed: Tuple[str, ...], what: str) -> Dict[str, Any]:
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise RuleEvaluationError(f"{what} must be an object, got {type(payload).__name__}")
    unknown = sorted(set(payload) - set(allowed))
    if unknown:
        raise RuleEvaluationError(f"Unknown {what} key(s): {', '.join(unknown)}")
    return payload


# ---------------------------------------------------------------------------
# Conditions
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ClauseContext:
    """What a condition clause may look at."""

    task: Any
    now: datetime
    signals: Mapping[str, Any] = field(default_factory=dict)

    @property
    def hours_until_due(self) -> Optional[float]:
        if self.task.due_date is None:
            return None
        return (self.task.due_date - self.now).total_seconds() / 3600.0


@dataclass(frozen=True)
class CommonClauses:
    categories: Tuple[str, ...] = ()
    projects: Tuple[str, ...] = ()
    priorities: Tuple[str, ...] = ()
    statuses: Tuple[str, ...] = ()

    KEYS = ("categories", "projects", "priorities", "statuses")

    @classmethod
    def _common_kwargs(cls, payload: Dict[str, Any]) -> Dict[str, Any]:
        return {key: _str_tuple(key, payload[key]) for key in CommonClauses.KEYS if key in payload}

    def clauses(self, ctx: ClauseContext) -> List[bool]:
        task = ctx.task
        results = []
        if self.categories:
            results.append(task.category in self.categories)
        if self.projects:
            results.append(task.project in self.projects)
        if self.priorities:
            results.append(task.priority in self.priorities)
        if self.statuses:
            results.append(task.status in self.statuses)
        return results

    def matches_all(self, ctx: ClauseContext) -> bool:
        return all(self.clauses(ctx))

    def matches_any(self, ctx: ClauseContext) -> bool:
        return any(self.clauses(ctx))

    def to_dict(self) -> Dict[str, Any]:
        data = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if value in ((), None, {}):
                continue
            data[f.name] = list(value) if isinstance(value, tuple) else value
        return data


@dataclass(frozen=True)
class DeadlineConditions(CommonClauses):
    within_hours: Optional[float] = None
    overdue: Optional[bool] = None
    has_due_date: Optional[bool] = None

    KEYS = CommonClauses.KEYS + ("within_hours", "overdue", "has_due_date")

    @classmethod
    def parse(cls, payload: Any) -> "DeadlineConditions":
        payload = _check_payload(payload, cls.KEYS, "deadline condition")
        kwargs = cls._common_kwargs(payload)
        if "within_hours" in payload:
            kwargs["within_hours"] = _number("within_hours", payload["within_hours"], minimum=0)
        for key in ("overdue", "has_due_date"):
            if key in payload:
                kwargs[key] = _boolean(key, payload[key])
        return cls(**kwargs)

    def clauses(self, ctx: ClauseContext) -> List[bool]:
        results = super().clauses(ctx)
        hours = ctx.hours_until_due
        if self.within_hours is not None:
            results.append(hours is not None and hours <= self.within_hours)
        if self.overdue is not None:
            results.append((hours is not None and hours <= 0) == self.overdue)
        if self.has_due_date is not None:
            results.append((hours is not None) == self.has_due_date)
        return results


@dataclass(frozen=True)
class DependencyConditions(CommonClauses):
    min_blocked: Optional[int] = None

    KEYS = CommonClauses.KEYS + ("min_blocked",)

    @classmethod
    def parse(cls, payload: Any) -> "DependencyConditions":
        payload = _check_payload(payload, cls.KEYS, "dependency condition")
        kwargs = cls._common_kwargs(payload)
        if "min_blocked" in payload:
            value = payload["min_blocked"]
            if not isinstance(value, int) or isinstance(value, bool) or value < 0:
                raise RuleEvaluationError(f"'min_blocked' must be a non-negative integer, got {value!r}")
            kwargs["min_blocked"] = value
        return cls(**kwargs)

    def clauses(self, ctx: ClauseContext) -> List[bool]:
        results = super().clauses(ctx)
        if self.min_blocked is not None:
            results.append(len(ctx.task.open_blocked) >= self.min_blocked)
        return results


@dataclass(frozen=True)
class SignalConditions(CommonClauses):
    """Conditions for pattern_based and context_based rules."""

    signal_min: Dict[str, float] = field(default_factory=dict)
    signal_max: Dict[str, float] = field(default_factory=dict)
    signal_equals: Dict[str, Any] = field(default_factory=dict)
    signal_present: Tuple[str, ...] = ()

    KEYS = CommonClauses.KEYS + ("signal_min", "signal_max", "signal_equals", "signal_present")

    @classmethod
    def parse(cls, payload: Any) -> "SignalConditions":
        payload = _check_payload(payload, cls.KEYS, "signal condition")
        kwargs = cls._common_kwargs(payload)
        for key in ("signal_min", "signal_max"):
            if key in payload:
                kwargs[key] = _number_map(key, payload[key])
        if "signal_equals" in payload:
            value = payload["signal_equals"]
            if not isinstance(value, dict):
                raise RuleEvaluationError(f"'signal_equals' must be an object, got {value!r}")
            kwargs["signal_equals"] = dict(value)
        if "signal_present" in payload:
            kwargs["signal_present"] = _str_tuple("signal_present", payload["signal_present"])
        return cls(**kwargs)

    def clauses(self, ctx: ClauseContext) -> List[bool]:
        results = super().clauses(ctx)
        signals = ctx.signals
        for key, bound in self.signal_min.items():
            value = signals.get(key)
            results.append(_is_number(value) and value >= bound)
        for key, bound in self.signal_max.items():
            value = signals.get(key)
            results.append(_is_number(value) and value <= bound)
        for key, expected in self.signal_equals.items():
            results.append(key in signals and signals[key] == expected)
        for key in self.signal_present:
            results.append(signals.get(key) is not None)
        return results


@dataclass(frozen=True)
class RawConditions:
    """Passthrough for rule types this release does not understand."""

    rule_type: str
    payload: Dict[str, Any] = field(default_factory=dict)

    def matches_all(self, ctx: ClauseContext) -> bool:
        return False

    def matches_any(self, ctx: ClauseContext) -> bool:
        return False

    def to_dict(self) -> Dict[str, Any]:
        return dict(self.payload)


CONDITION_TYPES = {
    RULE_DEADLINE: DeadlineConditions,
    RULE_DEPENDENCY: DependencyConditions,
    RULE_PATTERN: SignalConditions,
    RULE_CONTEXT: SignalConditions,
}


def parse_conditions(rule_type: str, payload: Any):
    condition_cls = CONDITION_TYPES.get(rule_type)
    if condition_cls is None:
        return RawConditions(rule_type=rule_type, payload=dict(payload or {}))
    return condition_cls.parse(payload)


# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DeadlineConfig:
    # Share of the headroom above urgency filled by the importance sub-score.
    importance_blend: float = 0.25
    base_confidence: float = 0.9

    KEYS = ("importance_blend", "base_confidence")

    @classmethod
    def parse(cls, payload: Any) -> "DeadlineConfig":
        payload = _check_payload(payload, cls.KEYS, "deadline config")
        return cls(**{key: _number(key, payload[key], 0.0, 1.0) for key in cls.KEYS if key in payload})


@dataclass(frozen=True)
class DependencyConfig:
    base_confidence: float = 0.85

    KEYS = ("base_confidence",)

    @classmethod
    def parse(cls, payload: Any) -> "DependencyConfig":
        payload = _check_payload(payload, cls.KEYS, "dependency config")
        return cls(**{key: _number(key, payload[key], 0.0, 1.0) for key in cls.KEYS if key in payload})


@dataclass(frozen=True)
class SignalConfig:
    # Empty means "use the aggregate sub-score".
    signal_keys: Tuple[str, ...] = ()
    invert: bool = False
    base_confidence: float = 0.7

    KEYS = ("signal_keys", "invert", "base_confidence")

    @classmethod
    def parse(cls, payload: Any) -> "SignalConfig":
        payload = _check_payload(payload, cls.KEYS, "signal config")
        kwargs: Dict[str, Any] = {}
        if "signal_keys" in payload:
            kwargs["signal_keys"] = _str_tuple("signal_keys", payload["signal_keys"])
        if "invert" in payload:
            kwargs["invert"] = _boolean("invert", payload["invert"])
        if "base_confidence" in payload:
            kwargs["base_confidence"] = _number("base_confidence", payload["base_confidence"], 0.0, 1.0)
        return cls(**kwargs)


@dataclass(frozen=True)
class RawConfig:
    rule_type: str
    payload: Dict[str, Any] = field(default_factory=dict)


CONFIG_TYPES = {
    RULE_DEADLINE: DeadlineConfig,
    RULE_DEPENDENCY: DependencyConfig,
    RULE_PATTERN: SignalConfig,
    RULE_CONTEXT: SignalConfig,
}


def parse_config(rule_type: str, payload: Any):
    config_cls = CONFIG_TYPES.get(rule_type)
    if config_cls is None:
        return RawConfig(rule_type=rule_type, payload=dict(payload or {}))
    return config_cls.parse(payload)


# ---------------------------------------------------------------------------
# Compiled rule
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RuleDefinition:
    """An OptimizationRule row with every JSON column parsed."""

    rule_id: Optional[int]
    rule_name: str
    rule_type: str
    weight: float
    is_active: bool
    triggers: Any
    exclusions: Any
    config: Any

    @property
    def is_known_type(self) -> bool:
        return self.rule_type in RULE_TYPES

    @classmethod
    def from_model(cls, rule) -> "RuleDefinition":
        """Raises RuleEvaluationError when any part of the rule is malformed."""
        try:
            weight = _number("weight", rule.weight, 0.0, 1.0)
            return cls(
                rule_id=rule.pk,
                rule_name=rule.rule_name,
                rule_type=rule.rule_type,
                weight=weight,
                is_active=bool(rule.is_active),
                triggers=parse_conditions(rule.rule_type, rule.trigger_conditions),
                exclusions=parse_conditions(rule.rule_type, rule.exclusion_conditions),
                config=parse_config(rule.rule_type, rule.rule_config),
            )
        except RuleEvaluationError as e:
            raise RuleEvaluationError(f"Rule {rule.pk} ({rule.rule_name}): {e}", rule_id=rule.pk) from e

"""Drift detection between desired and observed attributes.

DESIGN PHILOSOPHY:
- Desired-driven: only attributes present in desired state are compared;
  attributes the server adds (computed ids, endpoints) never count as drift
- Unset means unspecified: a None in desired state is ignored
- Semantic equivalence: empty list, empty string and missing are equivalent
- Order independence only where the resource kind declares it (zones, domains)

Nested blocks are compared positionally and reported with dotted paths
(``environment.0.id``). A change to any field whose top-level attribute is
immutable for the resource kind is reported as an immutable violation.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .resources import ResourceSchema

logger = logging.getLogger(__name__)


class NormalizationType(str, Enum):
    """Types of normalization operations."""

    # Empty equivalence: [], "", {}, null, missing are equivalent
    EMPTY_EQUIVALENCE = "empty_equivalence"

    # Case normalization for enum-like strings
    CASE_INSENSITIVE = "case_insensitive"

    # Numeric string normalization: "3" == 3
    NUMERIC_STRING = "numeric_string"

    # Array order independence
    ARRAY_UNORDERED = "array_unordered"


@dataclass(frozen=True)
class NormalizationRule:
    """A single normalization rule.

    Attributes:
        resource_type: Resource kind to match (supports wildcards)
        path_pattern: Attribute path pattern; ``*`` matches one segment, ``**`` any
        normalization_type: Type of normalization to apply
        reason: Human-readable explanation
    """

    resource_type: str
    path_pattern: str
    normalization_type: NormalizationType
    reason: str = ""

    def matches(self, resource_type: str, path: str) -> bool:
        if self.resource_type != "*" and not _glob_match(resource_type, self.resource_type):
            return False
        return self.path_pattern == "*" or _glob_match(path, self.path_pattern)


def _glob_match(value: str, pattern: str) -> bool:
    """Glob matching over dotted paths with * and ** support."""
    regex_pattern = "^"
    i = 0
    while i < len(pattern):
        if pattern[i : i + 2] == "**":
            regex_pattern += ".*"
            i += 2
        elif pattern[i] == "*":
            regex_pattern += "[^.]*"
            i += 1
        else:
            regex_pattern += re.escape(pattern[i])
            i += 1
    regex_pattern += "$"
    return bool(re.match(regex_pattern, value))


DEFAULT_NORMALIZATION_RULES: list[NormalizationRule] = [
    NormalizationRule(
        resource_type="*",
        path_pattern="**",
        normalization_type=NormalizationType.EMPTY_EQUIVALENCE,
        reason="Empty values equal null/missing",
    ),
    NormalizationRule(
        resource_type="*",
        path_pattern="cloud",
        normalization_type=NormalizationType.CASE_INSENSITIVE,
        reason="Cloud names may have case variations",
    ),
    NormalizationRule(
        resource_type="kafka_topic",
        path_pattern="config.**",
        normalization_type=NormalizationType.NUMERIC_STRING,
        reason="Topic config values are strings on the wire",
    ),
]


class DiffNormalizer:
    """Normalizes values so that only semantic differences remain."""

    def __init__(
        self,
        rules: list[NormalizationRule] | None = None,
        enable_default_rules: bool = True,
    ) -> None:
        self._rules: list[NormalizationRule] = []
        if enable_default_rules:
            self._rules.extend(DEFAULT_NORMALIZATION_RULES)
        if rules:
            self._rules.extend(rules)

    def normalize_value(self, value: Any, resource_type: str, path: str) -> Any:
        normalized = value
        for rule in self._rules:
            if rule.matches(resource_type, path):
                normalized = self._apply_normalization(normalized, rule)
        return normalized

    def is_unordered(self, resource_type: str, path: str) -> bool:
        return any(
            rule.normalization_type == NormalizationType.ARRAY_UNORDERED
            and rule.matches(resource_type, path)
            for rule in self._rules
        )

    def _apply_normalization(self, value: Any, rule: NormalizationRule) -> Any:
        match rule.normalization_type:
            case NormalizationType.EMPTY_EQUIVALENCE:
                if value in ("", [], {}, ()):
                    return None
                return value
            case NormalizationType.CASE_INSENSITIVE:
                return value.lower() if isinstance(value, str) else value
            case NormalizationType.NUMERIC_STRING:
                if isinstance(value, str):
                    try:
                        return float(value) if "." in value else int(value)
                    except ValueError:
                        return value
                return value
            case NormalizationType.ARRAY_UNORDERED:
                if isinstance(value, list):
                    return tuple(sorted(value, key=str))
                return value
            case _:
                return value

    def are_equivalent(self, desired: Any, observed: Any, resource_type: str, path: str) -> bool:
        """Check if two values are semantically equivalent."""
        return self.normalize_value(desired, resource_type, path) == self.normalize_value(
            observed, resource_type, path
        )


@dataclass(frozen=True)
class FieldChange:
    """One attribute whose observed value differs from desired."""

    path: str
    observed: Any
    desired: Any

    @property
    def attribute(self) -> str:
        """Top-level attribute the change belongs to."""
        return self.path.split(".", 1)[0]


@dataclass
class DiffResult:
    """Outcome of comparing desired to observed attributes."""

    changes: list[FieldChange] = field(default_factory=list)
    immutable_violations: set[str] = field(default_factory=set)

    @property
    def has_changes(self) -> bool:
        return bool(self.changes)

    @property
    def changed_fields(self) -> list[str]:
        return [change.path for change in self.changes]


class DriftDetector:
    """Computes drift for instances of any resource kind."""

    def __init__(self, rules: list[NormalizationRule] | None = None) -> None:
        self._rules = rules or []
        self._normalizers: dict[str, DiffNormalizer] = {}

    def _normalizer_for(self, schema: ResourceSchema) -> DiffNormalizer:
        resource_type = schema.resource_type.value
        normalizer = self._normalizers.get(resource_type)
        if normalizer is None:
            unordered = [
                NormalizationRule(
                    resource_type=resource_type,
                    path_pattern=pattern,
                    normalization_type=NormalizationType.ARRAY_UNORDERED,
                    reason="Order is not significant",
                )
                for pattern in schema.unordered_fields
            ]
            normalizer = DiffNormalizer(rules=self._rules + unordered)
            self._normalizers[resource_type] = normalizer
        return normalizer

    def diff(
        self,
        schema: ResourceSchema,
        desired: dict[str, Any],
        observed: dict[str, Any] | None,
    ) -> DiffResult:
        """Compare desired attributes against observed attributes.

        Args:
            schema: Schema of the resource kind.
            desired: Canonical desired attributes.
            observed: Last observed attributes (None if never read).

        Returns:
            DiffResult listing changed paths and immutable violations.
        """
        normalizer = self._normalizer_for(schema)
        observed = observed or {}
        changes: list[FieldChange] = []

        for key in sorted(desired):
            if key in schema.computed_fields or desired[key] is None:
                continue
            self._compare(
                normalizer, schema.resource_type.value, key, desired[key], observed.get(key), changes
            )

        result = DiffResult(changes=changes)
        result.immutable_violations = {
            change.attribute for change in changes if change.attribute in schema.immutable_fields
        }
        if changes:
            logger.debug(
                "Drift detected",
                extra={
                    "resource_type": schema.resource_type.value,
                    "changed_fields": result.changed_fields,
                },
            )
        return result

    def _compare(
        self,
        normalizer: DiffNormalizer,
        resource_type: str,
        path: str,
        desired: Any,
        observed: Any,
        changes: list[FieldChange],
    ) -> None:
        if normalizer.is_unordered(resource_type, path):
            if not normalizer.are_equivalent(desired, observed, resource_type, path):
                changes.append(FieldChange(path, observed, desired))
            return

        if normalizer.are_equivalent(desired, observed, resource_type, path):
            return

        if isinstance(desired, dict) and isinstance(observed, dict):
            for key in sorted(desired):
                if desired[key] is None:
                    continue
                self._compare(
                    normalizer,
                    resource_type,
                    f"{path}.{key}",
                    desired[key],
                    observed.get(key),
                    changes,
                )
            return

        if (
            isinstance(desired, list)
            and isinstance(observed, list)
            and len(desired) == len(observed)
            and all(isinstance(item, dict) for item in desired)
        ):
            for index, (want, have) in enumerate(zip(desired, observed, strict=True)):
                self._compare(normalizer, resource_type, f"{path}.{index}", want, have, changes)
            return

        changes.append(FieldChange(path, observed, desired))

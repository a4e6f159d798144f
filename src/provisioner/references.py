"""Cross-instance attribute references.

A desired attribute may refer to the reported state of another instance:

    gateway:
      id: ${network.prod.gateway.0.id}

The reference names the instance key (``<type>.<name>``) followed by an
attribute path into its reported state. Referenced instances become implicit
dependencies, and references are resolved only once the referenced instance
is ready.

A string that is exactly one reference resolves to the raw referenced value
(which may be a number or a list). References embedded in longer strings are
interpolated as text.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from typing import Any

from .errors import DependencyNotReady
from .models import ResourceInstance

REFERENCE_PATTERN = re.compile(r"\$\{([a-z_]+\.[A-Za-z0-9_-]+)\.([A-Za-z0-9_.-]+)\}")


def find_references(value: Any) -> set[str]:
    """Instance keys referenced anywhere in an attribute tree."""
    found: set[str] = set()
    if isinstance(value, str):
        found.update(match.group(1) for match in REFERENCE_PATTERN.finditer(value))
    elif isinstance(value, dict):
        for item in value.values():
            found |= find_references(item)
    elif isinstance(value, list):
        for item in value:
            found |= find_references(item)
    return found


def lookup_path(tree: Any, path: str) -> Any:
    """Follow a dotted path (list indices as numbers) into an attribute tree.

    Raises:
        KeyError: If any segment is missing.
    """
    current = tree
    for segment in path.split("."):
        if isinstance(current, list):
            try:
                current = current[int(segment)]
            except (ValueError, IndexError) as e:
                raise KeyError(path) from e
        elif isinstance(current, dict):
            if segment not in current:
                raise KeyError(path)
            current = current[segment]
        else:
            raise KeyError(path)
    return current


class ReferenceResolver:
    """Substitutes references with values from referenced instances."""

    def __init__(self, instances: Mapping[str, ResourceInstance]) -> None:
        self._instances = instances

    def resolve(self, value: Any, owner: ResourceInstance | None = None) -> Any:
        """Return a copy of ``value`` with every reference substituted.

        Raises:
            DependencyNotReady: If a referenced instance is not ready or its
                reported state lacks the referenced attribute.
        """
        unresolved: set[str] = set()
        resolved = self._resolve(value, unresolved)
        if unresolved:
            raise DependencyNotReady(
                sorted(unresolved),
                resource_type=owner.resource_type.value if owner else "",
                instance_id=owner.id if owner else "",
            )
        return resolved

    def _resolve(self, value: Any, unresolved: set[str]) -> Any:
        if isinstance(value, dict):
            return {k: self._resolve(v, unresolved) for k, v in value.items()}
        if isinstance(value, list):
            return [self._resolve(v, unresolved) for v in value]
        if not isinstance(value, str) or "${" not in value:
            return value

        whole = REFERENCE_PATTERN.fullmatch(value)
        if whole:
            return self._value_of(whole.group(1), whole.group(2), unresolved)

        def substitute(match: re.Match[str]) -> str:
            found = self._value_of(match.group(1), match.group(2), unresolved)
            return "" if found is None else str(found)

        return REFERENCE_PATTERN.sub(substitute, value)

    def _value_of(self, key: str, path: str, unresolved: set[str]) -> Any:
        instance = self._instances.get(key)
        if instance is None or not instance.is_ready:
            unresolved.add(key)
            return None
        try:
            return lookup_path(instance.reported(), path)
        except KeyError:
            unresolved.add(f"{key}.{path}")
            return None

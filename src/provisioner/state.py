"""Persisted reconciliation state.

The state file maps each instance key to its last-known remote identity so
that separate runs never issue a redundant Create:

```yaml
version: 1
resources:
  access_point.egress:
    type: access_point
    id: ap-abc123
    status: ready
    depends_on: [environment.prod]
    observed: {display_name: prod-ap-1, ...}
```

SECURITY: observed state may hold write-only values (API key secrets, topic
credentials). The file is written with owner-only permissions.
"""

from __future__ import annotations

import copy
import logging
import os
import tempfile
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError

from .config import MAX_STATE_FILE_SIZE_BYTES
from .models import DesiredState, ResourceInstance, ResourceStatus, ResourceType

logger = logging.getLogger(__name__)

STATE_VERSION = 1


class StateError(Exception):
    """Raised when the state file cannot be read or written."""

    pass


class PersistedInstance(BaseModel):
    """One instance entry of the state file."""

    type: ResourceType
    id: str = ""
    status: ResourceStatus = ResourceStatus.UNMANAGED
    depends_on: list[str] = Field(default_factory=list)
    observed: dict[str, Any] | None = None
    last_error: str | None = None
    consecutive_timeouts: int = 0


class StateDocument(BaseModel):
    version: int = STATE_VERSION
    resources: dict[str, PersistedInstance] = Field(default_factory=dict)


class StateStore:
    """Reads and writes the state file."""

    def __init__(self, path: Path) -> None:
        self._path = path

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> dict[str, ResourceInstance]:
        """Load persisted instances; a missing file means no state yet.

        Raises:
            StateError: If the file is unreadable, too large or malformed.
        """
        if not self._path.exists():
            logger.info("No state file, starting empty", extra={"path": str(self._path)})
            return {}

        try:
            if self._path.stat().st_size > MAX_STATE_FILE_SIZE_BYTES:
                raise StateError(
                    f"State file exceeds maximum size of {MAX_STATE_FILE_SIZE_BYTES} bytes: "
                    f"{self._path}"
                )
            raw = yaml.safe_load(self._path.read_text(encoding="utf-8"))
        except OSError as e:
            raise StateError(f"Failed to read state file {self._path}: {e}") from e
        except yaml.YAMLError as e:
            raise StateError(f"Invalid YAML in state file {self._path}: {e}") from e

        try:
            document = StateDocument.model_validate(raw or {})
        except ValidationError as e:
            raise StateError(f"Malformed state file {self._path}: {e}") from e

        if document.version != STATE_VERSION:
            raise StateError(
                f"Unsupported state file version {document.version} (expected {STATE_VERSION})"
            )

        instances = {
            key: ResourceInstance(
                key=key,
                resource_type=entry.type,
                depends_on=frozenset(entry.depends_on),
                id=entry.id,
                observed=entry.observed,
                status=entry.status,
                last_error=entry.last_error,
                consecutive_timeouts=entry.consecutive_timeouts,
            )
            for key, entry in document.resources.items()
        }
        logger.info(
            "Loaded state",
            extra={"path": str(self._path), "instances": len(instances)},
        )
        return instances

    def save(self, instances: Mapping[str, ResourceInstance]) -> None:
        """Write instances that exist remotely or are mid-operation.

        The file is replaced atomically.

        Raises:
            StateError: If the file cannot be written.
        """
        document = StateDocument(
            resources={
                key: PersistedInstance(
                    type=instance.resource_type,
                    id=instance.id,
                    status=instance.status,
                    depends_on=sorted(instance.depends_on),
                    observed=instance.observed,
                    last_error=instance.last_error,
                    consecutive_timeouts=instance.consecutive_timeouts,
                )
                for key, instance in sorted(instances.items())
                if instance.exists_remotely
            }
        )
        content = yaml.safe_dump(document.model_dump(mode="json"), sort_keys=True)

        directory = self._path.parent
        try:
            directory.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=directory, prefix=f".{self._path.name}.")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    f.write(content)
                os.chmod(tmp_name, 0o600)
                os.replace(tmp_name, self._path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as e:
            raise StateError(f"Failed to write state file {self._path}: {e}") from e

        logger.debug(
            "Saved state",
            extra={"path": str(self._path), "instances": len(document.resources)},
        )


def merge_instances(
    desired: Mapping[str, DesiredState],
    persisted: Mapping[str, ResourceInstance],
) -> dict[str, ResourceInstance]:
    """Combine declarations with persisted state into tracked instances.

    Declared instances pick up their persisted identity; persisted instances
    no longer declared get ``desired=None`` so that they are deleted.
    """
    instances: dict[str, ResourceInstance] = {}
    for key, declaration in desired.items():
        existing = persisted.get(key)
        if existing is None:
            instances[key] = ResourceInstance.from_desired(declaration)
            continue
        existing.desired = copy.deepcopy(declaration.attributes)
        existing.depends_on = declaration.depends_on
        instances[key] = existing

    for key, existing in persisted.items():
        if key not in desired:
            existing.desired = None
            instances[key] = existing
    return instances

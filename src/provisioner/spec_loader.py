"""Desired-state document loading with validation.

SECURITY: All file operations enforce size limits to prevent DoS attacks
via large files. Input validation is performed at the boundary.

DOCUMENT FORMAT:
```yaml
resources:
  - type: service_account
    name: app
    attributes:
      display_name: app-sa
  - type: role_binding
    name: app-admin
    attributes:
      principal: User:${service_account.app.id}
      role_name: CloudClusterAdmin
      crn_pattern: ${kafka_cluster.main.rbac_crn}
```

Every ``${<type>.<name>.<path>}`` reference adds an implicit dependency on
the referenced instance; ``depends_on`` lists any extra ones.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Annotated, Any

import yaml
from pydantic import BaseModel, Field, ValidationError, model_validator

from .config import MAX_SPEC_FILE_SIZE_BYTES
from .errors import InvalidDesiredState
from .models import DesiredState, ResourceType
from .references import find_references
from .resources import get_schema

logger = logging.getLogger(__name__)

INSTANCE_KEY_PATTERN = r"^[a-z_]+\.[A-Za-z0-9_-]+$"


class SpecLoadError(Exception):
    """Raised when document loading or validation fails."""

    pass


class ResourceDeclaration(BaseModel):
    """One resource entry of a desired-state document."""

    model_config = {"extra": "forbid"}

    type: ResourceType
    name: Annotated[str, Field(min_length=1, max_length=128, pattern=r"^[A-Za-z0-9_-]+$")]
    depends_on: list[Annotated[str, Field(pattern=INSTANCE_KEY_PATTERN)]] = Field(
        default_factory=list
    )
    attributes: dict[str, Any] = Field(default_factory=dict)

    @property
    def key(self) -> str:
        return f"{self.type.value}.{self.name}"

    def dependencies(self) -> frozenset[str]:
        """Explicit dependencies plus those inferred from references."""
        return frozenset(self.depends_on) | find_references(self.attributes)


class DesiredDocument(BaseModel):
    """A whole desired-state document."""

    model_config = {"extra": "forbid"}

    resources: list[ResourceDeclaration] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_keys(self) -> DesiredDocument:
        seen: set[str] = set()
        for declaration in self.resources:
            if declaration.key in seen:
                raise ValueError(f"duplicate resource '{declaration.key}'")
            seen.add(declaration.key)

        for declaration in self.resources:
            dependencies = declaration.dependencies()
            if declaration.key in dependencies:
                raise ValueError(f"resource '{declaration.key}' cannot depend on itself")
            unknown = sorted(dependencies - seen)
            if unknown:
                raise ValueError(
                    f"resource '{declaration.key}' depends on undeclared resources: {unknown}"
                )
        return self


def parse_desired_document(data: Any, source: str = "<document>") -> dict[str, DesiredState]:
    """Validate a parsed document and return desired states by instance key.

    Declarations without references are validated against their resource
    schema here; the rest are validated once references are resolved.

    Raises:
        SpecLoadError: If the document or any declaration is invalid.
    """
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise SpecLoadError(f"Document must contain a YAML mapping: {source}")

    try:
        document = DesiredDocument.model_validate(data)
    except ValidationError as e:
        # Format Pydantic validation errors for readability
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            errors.append(f"  - {loc}: {error['msg']}" if loc else f"  - {error['msg']}")
        error_list = "\n".join(errors)
        raise SpecLoadError(f"Validation failed for {source}:\n{error_list}") from e

    desired: dict[str, DesiredState] = {}
    for declaration in document.resources:
        if not find_references(declaration.attributes):
            try:
                get_schema(declaration.type).validate(declaration.attributes)
            except InvalidDesiredState as e:
                raise SpecLoadError(f"{declaration.key} in {source}: {e.message}") from e

        desired[declaration.key] = DesiredState(
            key=declaration.key,
            resource_type=declaration.type,
            attributes=declaration.attributes,
            depends_on=declaration.dependencies(),
        )
    return desired


def load_desired_states(path: Path) -> dict[str, DesiredState]:
    """Load and validate a desired-state document from YAML.

    Raises:
        SpecLoadError: If the document cannot be loaded or fails validation.
    """
    if not path.exists():
        raise SpecLoadError(f"Desired-state document not found: {path}")

    # SECURITY: Check file size before reading to prevent DoS
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise SpecLoadError(f"Failed to stat document {path}: {e}") from e

    if file_size > MAX_SPEC_FILE_SIZE_BYTES:
        raise SpecLoadError(
            f"Document exceeds maximum size of {MAX_SPEC_FILE_SIZE_BYTES} bytes: {path}"
        )

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise SpecLoadError(f"Failed to read document {path}: {e}") from e

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise SpecLoadError(f"Invalid YAML in {path}: {e}") from e

    desired = parse_desired_document(raw_data, str(path))
    logger.info("Loaded %d resource declarations from %s", len(desired), path)
    return desired

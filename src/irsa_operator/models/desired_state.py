"""
Desired-state document: the operator-declared identity mappings and intents.

The document may be YAML or JSON. Keys are camelCase and the document
round-trips through the models without loss.
"""

import json
from collections import Counter
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, model_validator

from irsa_operator.errors import ValidationError

from .identity import AccessIntent, IdentityMapping, MappingKey, parse_model


class DesiredState(BaseModel):
    """Full desired state for one reconciliation cycle."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    identity_mappings: tuple[IdentityMapping, ...] = Field(
        (), alias="identityMappings"
    )
    access_intents: tuple[AccessIntent, ...] = Field((), alias="accessIntents")

    @model_validator(mode="after")
    def _unique_mappings(self) -> "DesiredState":
        counts = Counter(m.key for m in self.identity_mappings)
        duplicates = sorted(key for key, count in counts.items() if count > 1)
        if duplicates:
            rendered = ", ".join(f"{ns}/{sa}" for ns, sa in duplicates)
            raise ValueError(f"duplicate identity mappings for {rendered}")
        return self

    def mappings_by_key(self) -> dict[MappingKey, IdentityMapping]:
        return {m.key: m for m in self.identity_mappings}

    def intents_by_namespace(self) -> dict[str, list[AccessIntent]]:
        grouped: dict[str, list[AccessIntent]] = {}
        for intent in self.access_intents:
            grouped.setdefault(intent.namespace, []).append(intent)
        return grouped

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


def load_desired_state(text: str) -> DesiredState:
    """
    Parse a YAML or JSON desired-state document.

    JSON is a subset of YAML, so a single safe YAML parse covers both.

    Raises:
        ValidationError: If the document cannot be parsed or fails validation
    """
    try:
        data = yaml.safe_load(text) if text and text.strip() else {}
    except yaml.YAMLError as e:
        raise ValidationError(f"desired-state document is not valid YAML/JSON: {e}") from e

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ValidationError("desired-state document must be a mapping at the top level")

    return parse_model(DesiredState, data, resource="DesiredState")


def load_desired_state_file(path: str | Path) -> DesiredState:
    """Read and parse a desired-state document from disk."""
    try:
        text = Path(path).read_text(encoding="utf-8")
    except OSError as e:
        raise ValidationError(f"cannot read desired-state document {path}: {e}") from e
    return load_desired_state(text)


def dump_desired_state(state: DesiredState, fmt: Literal["yaml", "json"] = "yaml") -> str:
    """Serialize a desired state back to a document."""
    document = state.to_document()
    if fmt == "json":
        return json.dumps(document, indent=2, sort_keys=True)
    return yaml.safe_dump(document, sort_keys=False)

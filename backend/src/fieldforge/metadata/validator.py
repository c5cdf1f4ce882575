"""
JSON Schema validation for FieldForge entity YAML files.

Usage:
    from fieldforge.metadata.validator import validate_metadata_dir

    issues = validate_metadata_dir(Path("metadata"))
    for issue in issues:
        print(issue)

Schema validation catches structural mistakes (typos in keys, bad policy
kinds, unsafe identifiers). Cross-references between fields are checked
afterwards by MetadataLoader.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from jsonschema import Draft202012Validator
from jsonschema.exceptions import ValidationError as SchemaValidationError

logger = logging.getLogger(__name__)

_SCHEMAS_DIR = Path(__file__).parent / "schemas"
ENTITY_SCHEMA = "entity.schema.json"


@dataclass
class ValidationIssue:
    """A single validation finding for a metadata YAML file."""

    file: Path
    message: str
    path: str = ""          # JSON pointer path within the document, e.g. "rls/policy/customer"
    severity: str = "error" # "error" | "warning"

    def __str__(self) -> str:
        loc = f" at {self.path}" if self.path else ""
        return f"[{self.severity.upper()}] {self.file}{loc}: {self.message}"


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


@lru_cache(maxsize=None)
def _load_schema(name: str) -> dict[str, Any]:
    with (_SCHEMAS_DIR / name).open() as fh:
        return json.load(fh)


def _json_path(error: SchemaValidationError) -> str:
    """Convert a jsonschema error path to a readable string."""
    parts = []
    for p in error.absolute_path:
        if isinstance(p, int):
            parts.append(f"[{p}]")
        else:
            parts.append(str(p))
    return "/".join(parts).replace("/[", "[")


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def validate_document(doc: Any, source: Path) -> list[ValidationIssue]:
    """Validate an already-parsed entity document."""
    validator = Draft202012Validator(_load_schema(ENTITY_SCHEMA))
    return [
        ValidationIssue(file=source, message=error.message, path=_json_path(error))
        for error in sorted(validator.iter_errors(doc), key=lambda e: list(e.path))
    ]


def validate_yaml_file(yaml_path: Path) -> list[ValidationIssue]:
    """
    Validate a single entity YAML file.

    Returns:
        A list of :class:`ValidationIssue` objects (empty on success).
    """
    try:
        with yaml_path.open() as fh:
            raw = yaml.safe_load(fh)
    except yaml.YAMLError as exc:
        return [ValidationIssue(file=yaml_path, message=f"YAML parse error: {exc}")]

    if raw is None:
        return [
            ValidationIssue(file=yaml_path, message="File is empty or contains only whitespace")
        ]

    return validate_document(raw, yaml_path)


def validate_metadata_dir(metadata_dir: Path) -> list[ValidationIssue]:
    """
    Validate every ``entities/*.yaml`` file under *metadata_dir*.

    Returns:
        A flat list of issues across all files; empty means valid.
    """
    entities_dir = metadata_dir / "entities"
    if not entities_dir.is_dir():
        return [
            ValidationIssue(
                file=entities_dir,
                message=f"Entity metadata directory does not exist: {entities_dir}",
            )
        ]

    all_issues: list[ValidationIssue] = []
    for yaml_file in sorted(entities_dir.glob("*.yaml")):
        issues = validate_yaml_file(yaml_file)
        if issues:
            logger.debug("%d issue(s) in %s", len(issues), yaml_file)
        all_issues.extend(issues)
    return all_issues

"""Metadata CLI commands."""

from pathlib import Path

import click

from fieldforge.metadata.loader import DEFAULT_METADATA_PATH, MetadataLoader
from fieldforge.metadata.validator import validate_metadata_dir, validate_yaml_file


@click.group()
def metadata():
    """Metadata commands."""
    pass


@metadata.command()
@click.option(
    "--path",
    "metadata_path",
    default=None,
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    help="Metadata directory containing entities/ (defaults to the packaged metadata).",
)
@click.option(
    "--file",
    "target_file",
    default=None,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Validate a single entity YAML file against the schema only.",
)
def validate(metadata_path: Path | None, target_file: Path | None):
    """Validate entity YAML files against the JSON Schema, then cross-check them."""
    metadata_path = metadata_path or DEFAULT_METADATA_PATH

    # ── Schema (JSON Schema) validation ─────────────────────────────────────
    if target_file is not None:
        issues = validate_yaml_file(target_file)
    else:
        issues = validate_metadata_dir(metadata_path)

    for issue in issues:
        click.echo(click.style(str(issue), fg="red"))

    if issues:
        click.echo(click.style(f"\n{len(issues)} schema error(s) found", fg="red", bold=True))
        raise SystemExit(1)

    # ── Semantic (loader) validation ─────────────────────────────────────────
    if target_file is None:
        loader = MetadataLoader(metadata_path)
        try:
            loader.load_all()
        except ValueError as e:
            click.echo(click.style(f"\nSemantic validation failed: {e}", fg="red"), err=True)
            raise SystemExit(1)

        entities = loader.list_entities()
        click.echo(f"Loaded {len(entities)} entities:")
        for name in sorted(entities):
            entity = loader.get_entity(name)
            click.echo(
                f"  ✓ {name} ({len(entity.fields)} fields, "
                f"{len(entity.relationships)} relationships, "
                f"policies: {', '.join(sorted(entity.rls_policy))})"
            )

    click.echo(click.style("All metadata is valid.", fg="green", bold=True))

#!/usr/bin/env python3
"""
CLI tool for the Infrastructure operator.
Provides a kubectl-like interface for managing Infrastructure objects.
"""

import asyncio
import json
import re
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Literal, Optional, Union

import click
import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator
from tabulate import tabulate

from config import get_config
from db import DatabaseManager
from errors import AlreadyExistsError, DeletionPendingError, NotFoundError
from models import (
    OPERATION_ANNOTATION,
    OPERATION_MIGRATE,
    OPERATION_RESTORE,
    Cluster,
    Infrastructure,
)

NAME_PATTERN = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")
MAX_NAME_LENGTH = 63


def validate_name_format(value: str, field_name: str) -> str:
    if len(value) > MAX_NAME_LENGTH:
        raise ValueError(f"{field_name} must be at most {MAX_NAME_LENGTH} characters")
    if not NAME_PATTERN.match(value):
        raise ValueError(
            f"{field_name} must consist of lower case alphanumeric characters "
            f"or '-', and must start and end with an alphanumeric character"
        )
    return value


class ObjectMeta(BaseModel):
    """Manifest metadata."""

    name: str = Field(..., description="Object name")
    namespace: str = Field(default="default", description="Object namespace")
    annotations: Dict[str, str] = Field(default_factory=dict)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        return validate_name_format(v, "name")

    @field_validator("namespace")
    @classmethod
    def validate_namespace(cls, v: str) -> str:
        return validate_name_format(v, "namespace")


class ClusterMeta(BaseModel):
    """Cluster manifest metadata; a cluster is keyed by its namespace."""

    namespace: str = Field(..., description="Namespace owned by the cluster")

    @field_validator("namespace")
    @classmethod
    def validate_namespace(cls, v: str) -> str:
        return validate_name_format(v, "namespace")


class InfrastructureManifest(BaseModel):
    kind: Literal["Infrastructure"]
    metadata: ObjectMeta
    spec: Dict[str, Any] = Field(default_factory=dict)


class ClusterSpec(BaseModel):
    shoot: Dict[str, Any] = Field(default_factory=dict)
    seed: Dict[str, Any] = Field(default_factory=dict)
    cloud_profile: Dict[str, Any] = Field(default_factory=dict)


class ClusterManifest(BaseModel):
    kind: Literal["Cluster"]
    metadata: ClusterMeta
    spec: ClusterSpec = Field(default_factory=ClusterSpec)


Manifest = Union[InfrastructureManifest, ClusterManifest]


def parse_manifest(data: Any) -> Manifest:
    """
    Validate one manifest document.

    Raises:
        ValueError: On an unknown kind or invalid content
    """
    if not isinstance(data, dict):
        raise ValueError("manifest must be a mapping")

    kind = data.get("kind")
    try:
        if kind == "Infrastructure":
            return InfrastructureManifest.model_validate(data)
        if kind == "Cluster":
            return ClusterManifest.model_validate(data)
    except ValidationError as e:
        raise ValueError(f"invalid {kind} manifest: {e}") from e
    raise ValueError(f"unsupported kind: {kind!r}")


def load_manifests(filename: str) -> List[Manifest]:
    """Read all manifests from a YAML (multi-document) or JSON file."""
    with open(filename, "r") as f:
        if filename.endswith(".json"):
            documents = [json.load(f)]
        else:
            documents = [doc for doc in yaml.safe_load_all(f) if doc is not None]
    return [parse_manifest(doc) for doc in documents]


@asynccontextmanager
async def open_db() -> AsyncIterator[DatabaseManager]:
    """Connect to the store configured in the environment."""
    db_config = get_config().database
    db = DatabaseManager(
        host=db_config.host,
        port=db_config.port,
        database=db_config.database,
        user=db_config.user,
        password=db_config.password,
        min_pool_size=1,
        max_pool_size=2,
    )
    await db.connect()
    try:
        yield db
    finally:
        await db.close()


def run_async(coro) -> Any:
    return asyncio.run(coro)


def _summary_row(infra: Infrastructure) -> List[Any]:
    last_operation = infra.status.last_operation
    return [
        infra.namespace,
        infra.name,
        infra.generation,
        infra.status.observed_generation,
        last_operation.type.value if last_operation else "",
        last_operation.state.value if last_operation else "",
        f"{last_operation.progress}%" if last_operation else "",
        "Deleting" if infra.deletion_timestamp else "",
    ]


def _echo_document(data: Any, output: str) -> None:
    if output == "json":
        click.echo(json.dumps(data, indent=2, default=str))
    else:
        click.echo(yaml.safe_dump(data, default_flow_style=False, sort_keys=False))


@click.group()
def cli():
    """Infrastructure operator CLI - kubectl-like interface for Infrastructure objects"""
    pass


@cli.command()
@click.option(
    "--filename",
    "-f",
    required=True,
    type=click.Path(exists=True, dir_okay=False),
    help="YAML or JSON manifest file",
)
def apply(filename):
    """Create or update objects from a manifest file"""
    try:
        manifests = load_manifests(filename)
    except (ValueError, yaml.YAMLError) as e:
        raise click.ClickException(str(e))

    async def _apply():
        async with open_db() as db:
            for manifest in manifests:
                if isinstance(manifest, ClusterManifest):
                    await db.put_cluster(
                        Cluster(
                            namespace=manifest.metadata.namespace,
                            shoot=manifest.spec.shoot,
                            seed=manifest.spec.seed,
                            cloud_profile=manifest.spec.cloud_profile,
                        )
                    )
                    click.echo(f"cluster/{manifest.metadata.namespace} configured")
                    continue

                meta = manifest.metadata
                try:
                    await db.create_infrastructure(
                        meta.namespace, meta.name, manifest.spec, meta.annotations
                    )
                    click.echo(f"infrastructure/{meta.namespace}/{meta.name} created")
                except AlreadyExistsError:
                    try:
                        infra = await db.update_infrastructure_spec(
                            meta.namespace, meta.name, manifest.spec
                        )
                    except DeletionPendingError as e:
                        raise click.ClickException(str(e))
                    click.echo(
                        f"infrastructure/{meta.namespace}/{meta.name} configured "
                        f"(generation {infra.generation})"
                    )

    run_async(_apply())


@cli.command()
@click.option("--namespace", "-n", default=None, help="Limit to one namespace")
@click.option(
    "--output", "-o", type=click.Choice(["table", "json", "yaml"]), default="table"
)
@click.option("--limit", "-l", default=100, help="Maximum number of objects")
def get(namespace, output, limit):
    """List Infrastructure objects"""

    async def _get():
        async with open_db() as db:
            return await db.list_infrastructures(namespace=namespace, limit=limit)

    infras = run_async(_get())
    if output != "table":
        _echo_document([infra.to_dict() for infra in infras], output)
        return

    if not infras:
        click.echo("No infrastructures found")
        return

    headers = [
        "Namespace",
        "Name",
        "Generation",
        "Observed",
        "Operation",
        "State",
        "Progress",
        "Phase",
    ]
    rows = [_summary_row(infra) for infra in infras]
    click.echo(tabulate(rows, headers=headers, tablefmt="simple"))


@cli.command()
@click.argument("name")
@click.option("--namespace", "-n", default="default")
@click.option("--output", "-o", type=click.Choice(["json", "yaml"]), default="yaml")
def describe(name, namespace, output):
    """Show an Infrastructure object with its status"""

    async def _describe():
        async with open_db() as db:
            return await db.get_infrastructure(namespace, name)

    try:
        infra = run_async(_describe())
    except NotFoundError as e:
        raise click.ClickException(str(e))
    _echo_document(infra.to_dict(), output)


@cli.command()
@click.argument("name")
@click.option("--namespace", "-n", default="default")
@click.option(
    "--operation",
    required=True,
    type=click.Choice([OPERATION_MIGRATE, OPERATION_RESTORE]),
    help="Special operation to run on the next reconciliation",
)
def annotate(name, namespace, operation):
    """Request a migrate or restore operation"""

    async def _annotate():
        async with open_db() as db:
            await db.set_annotation(namespace, name, OPERATION_ANNOTATION, operation)

    try:
        run_async(_annotate())
    except NotFoundError as e:
        raise click.ClickException(str(e))
    click.echo(f"infrastructure/{namespace}/{name} annotated ({operation})")


@cli.command()
@click.argument("name")
@click.option("--namespace", "-n", default="default")
@click.confirmation_option(prompt="Are you sure you want to delete this object?")
def delete(name, namespace):
    """Delete an Infrastructure object (runs the actuator's delete)"""

    async def _delete():
        async with open_db() as db:
            return await db.request_deletion(namespace, name)

    try:
        removed = run_async(_delete())
    except NotFoundError as e:
        raise click.ClickException(str(e))

    if removed:
        click.echo(f"infrastructure/{namespace}/{name} deleted")
    else:
        click.echo(f"infrastructure/{namespace}/{name} marked for deletion")


@cli.command()
@click.argument("name", required=False)
@click.option("--namespace", "-n", default=None)
@click.option("--limit", "-l", default=20, help="Number of events to show")
def events(name, namespace, limit):
    """Show recent events"""

    async def _events():
        async with open_db() as db:
            return await db.list_events(namespace=namespace, name=name, limit=limit)

    rows = run_async(_events())
    if not rows:
        click.echo("No events found")
        return

    headers = ["Time", "Type", "Reason", "Object", "Message"]
    table = [
        [
            row.get("created_at"),
            row["type"],
            row["reason"],
            f"{row['namespace']}/{row['name']}",
            row["message"],
        ]
        for row in rows
    ]
    click.echo(tabulate(table, headers=headers, tablefmt="simple"))


@cli.command("migrate-db")
def migrate_db():
    """Apply pending database schema migrations"""

    async def _migrate():
        async with open_db() as db:
            await db.initialize_schema()

    run_async(_migrate())
    click.echo("Database schema is up to date")


def main(argv: Optional[List[str]] = None):
    cli(args=argv)


if __name__ == "__main__":
    main()

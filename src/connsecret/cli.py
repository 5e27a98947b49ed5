"""Connection secret CLI (connsecret).

Usage:
    connsecret run                                   # Run the operator
    connsecret name my-project cluster0 app-user     # Print the secret name
    connsecret name pid1 cluster0 app-user --internal  # Print the request name
    connsecret render deployment.yaml user.yaml --project-id pid1 --project-name P
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import click
import yaml
from pydantic import ValidationError

from .builder import build_secret
from .identifiers import ResourceIdentifierSet, create_internal_format, create_k8s_format
from .models import AtlasDatabaseUser, AtlasDeployment
from .validity import Expired, InvalidExpiration, OutOfScope, evaluate


def load_manifest(path: Path) -> dict[str, Any]:
    """Load a single YAML manifest.

    Raises:
        click.ClickException: If the file is not a YAML mapping.
    """
    try:
        with path.open() as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise click.ClickException(f"Invalid YAML in {path}: {e}") from e
    if not isinstance(data, dict):
        raise click.ClickException(f"{path} must contain a single YAML mapping")
    return data


@click.group()
@click.version_option(version="0.1.0", prog_name="connsecret")
def cli() -> None:
    """Connection secret operator CLI (connsecret).

    \b
    Quick Start:
        connsecret run                   # Run the operator against the current cluster
        connsecret name P cluster0 user  # Show the secret a pair maps to
    """
    pass


@cli.command()
@click.option("--namespace", "-n", envvar="WATCH_NAMESPACE", default="", help="Namespace to watch")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="INFO",
    help="Log level",
)
@click.option("--json-logs/--text-logs", default=True, help="JSON log output (default: json)")
def run(namespace: str, log_level: str, json_logs: bool) -> None:
    """Run the operator.

    Settings not covered by options come from the environment
    (WORKER_COUNT, RESYNC_INTERVAL, ATLAS_CREDENTIALS_SECRET, ...).
    """
    from .main import run as run_operator

    os.environ["WATCH_NAMESPACE"] = namespace
    os.environ["LOG_LEVEL"] = log_level.upper()
    os.environ["ENABLE_JSON_LOGGING"] = "true" if json_logs else "false"
    run_operator()


@cli.command()
@click.argument("project")
@click.argument("cluster")
@click.argument("user")
@click.option(
    "--internal",
    is_flag=True,
    help="Print the internal request name; PROJECT is then the project ID",
)
def name(project: str, cluster: str, user: str, internal: bool) -> None:
    """Print the connection secret name for PROJECT, CLUSTER and USER."""
    if internal:
        click.echo(create_internal_format(project, cluster, user))
    else:
        click.echo(create_k8s_format(project, cluster, user))


@cli.command()
@click.argument("deployment_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.argument("user_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--project-id", required=True, help="Project ID")
@click.option("--project-name", required=True, help="Project display name")
@click.option(
    "--password-env",
    default=None,
    help="Environment variable holding the user's password",
)
@click.option("--namespace", default=None, help="Override the user's namespace")
def render(
    deployment_file: Path,
    user_file: Path,
    project_id: str,
    project_name: str,
    password_env: str | None,
    namespace: str | None,
) -> None:
    """Render the connection secret for a deployment and user manifest.

    Readiness is not checked; expiration and scope are.

    \b
    Examples:
        connsecret render cluster.yaml user.yaml --project-id pid1 --project-name P
        DBPASS=s3cret connsecret render c.yaml u.yaml --project-id pid1 \\
            --project-name P --password-env DBPASS
    """
    deployment_obj = load_manifest(deployment_file)
    user_obj = load_manifest(user_file)
    if namespace:
        user_obj.setdefault("metadata", {})["namespace"] = namespace

    try:
        deployment = AtlasDeployment.model_validate(deployment_obj)
        user = AtlasDatabaseUser.model_validate(user_obj)
    except ValidationError as e:
        raise click.ClickException(f"Invalid manifest: {e}") from e

    match evaluate(deployment, user):
        case Expired(delete_after=delete_after):
            raise click.ClickException(f"User expired at {delete_after.isoformat()}")
        case OutOfScope(deployment_name=deployment_name, scopes=scopes):
            raise click.ClickException(
                f"Deployment {deployment_name} is outside user scopes {list(scopes)}"
            )
        case InvalidExpiration(value=value, error=error):
            raise click.ClickException(f"Invalid deleteAfterDate {value!r}: {error}")

    password = ""
    if password_env:
        password = os.environ.get(password_env, "")
        if not password:
            raise click.ClickException(f"Environment variable {password_env} is not set")

    ids = ResourceIdentifierSet(
        project_id=project_id,
        project_name=project_name,
        cluster_name=deployment.deployment_name,
        database_username=user.username,
    )
    record = build_secret(ids, deployment, user, password)
    click.echo(yaml.safe_dump(record.to_manifest(), sort_keys=False), nl=False)


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()

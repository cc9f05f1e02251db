"""Infrastructure flow CLI (infraflow).

Usage:
    infraflow reconcile --infrastructure infra.yaml --cluster cluster.yaml --state state.json
    infraflow delete --infrastructure infra.yaml --state state.json

Azure settings come from the environment (AZURE_SUBSCRIPTION_ID,
AZURE_CLIENT_ID, timeouts); see ``Config.from_env``.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path

import click

from .main import Action, run, setup_logging

PROG_NAME = "infraflow"
VERSION = "0.1.0"


def _flow_options(func):
    """Options shared by the reconcile and delete commands."""
    func = click.option(
        "--state",
        "state_path",
        type=click.Path(dir_okay=False, path_type=Path),
        help="State file; read at start, rewritten after every completed task.",
    )(func)
    func = click.option(
        "--cluster",
        "cluster_path",
        type=click.Path(exists=True, dir_okay=False, path_type=Path),
        help="Cluster record with the shoot and cloud profile.",
    )(func)
    func = click.option(
        "--infrastructure",
        "infrastructure_path",
        required=True,
        type=click.Path(exists=True, dir_okay=False, path_type=Path),
        help="Infrastructure manifest.",
    )(func)
    return func


@click.group()
@click.version_option(version=VERSION, prog_name=PROG_NAME)
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
def cli(verbose: bool) -> None:
    """Reconcile the Azure network infrastructure of a Kubernetes cluster.

    \b
    Exit codes:
        0  flow succeeded
        1  flow failed or inputs are invalid
        2  credential secrets found in the environment
    """
    setup_logging(logging.DEBUG if verbose else logging.INFO)


@cli.command()
@_flow_options
@click.option(
    "--kubeconfig",
    type=click.Path(exists=True, dir_okay=False),
    help="Kubeconfig of the cluster's control plane, used by the VMO migration.",
)
def reconcile(
    infrastructure_path: Path,
    cluster_path: Path | None,
    state_path: Path | None,
    kubeconfig: str | None,
) -> None:
    """Create or update the cluster's network infrastructure."""
    sys.exit(
        run(
            Action.RECONCILE,
            infrastructure_path=infrastructure_path,
            cluster_path=cluster_path,
            state_path=state_path,
            kubeconfig=kubeconfig,
        )
    )


@cli.command()
@_flow_options
def delete(
    infrastructure_path: Path,
    cluster_path: Path | None,
    state_path: Path | None,
) -> None:
    """Delete everything created for the cluster."""
    sys.exit(
        run(
            Action.DELETE,
            infrastructure_path=infrastructure_path,
            cluster_path=cluster_path,
            state_path=state_path,
        )
    )


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()

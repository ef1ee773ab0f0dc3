#!/usr/bin/env python3
"""
iamctl - command-line interface for the IAM reconciler.

Reads resource manifests in YAML or JSON and drives the reconcile
controller against the identity service.
"""

import asyncio
import json
import logging
import sys

import click
import yaml
from tabulate import tabulate

from client import IAMClient
from config import Config, load_config
from controller import Action, ReconcileController, ReconcileRequest
from db import DatabaseStateStore, StateStore
from errors import ReconcileError
from resources.registry import register_builtin_kinds


def setup_logging(level: str) -> None:
    """Configure root logging for the CLI process."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def load_manifests(filename: str) -> list:
    """
    Read one or more resource manifests from a file.

    A manifest is a mapping with ``kind``, ``key`` and ``spec``. YAML files may
    hold several documents; JSON files may hold a single object or a list.
    """
    with open(filename, "r") as f:
        if filename.endswith(".yaml") or filename.endswith(".yml"):
            documents = [doc for doc in yaml.safe_load_all(f) if doc]
        else:
            data = json.load(f)
            documents = data if isinstance(data, list) else [data]

    manifests = []
    for doc in documents:
        if not isinstance(doc, dict):
            raise click.ClickException(f"{filename}: manifest must be a mapping")
        missing = [name for name in ("kind", "key", "spec") if name not in doc]
        if missing:
            raise click.ClickException(
                f"{filename}: manifest is missing {', '.join(missing)}"
            )
        manifests.append(doc)
    return manifests


async def create_store(cfg: Config) -> StateStore:
    """Open the PostgreSQL state store."""
    store = DatabaseStateStore(
        host=cfg.database.host,
        port=cfg.database.port,
        database=cfg.database.database,
        user=cfg.database.user,
        password=cfg.database.password,
        min_pool_size=cfg.database.min_pool_size,
        max_pool_size=cfg.database.max_pool_size,
    )
    await store.connect()
    await store.initialize_schema()
    return store


async def run_requests(cfg: Config, requests: list) -> list:
    """Run requests through a controller and release every resource."""
    registry = register_builtin_kinds()
    store = await create_store(cfg)
    try:
        async with IAMClient(
            cfg.iam.idm_url,
            access_token=cfg.iam.access_token,
            timeout=cfg.iam.request_timeout,
        ) as client:
            controller = ReconcileController(
                client, store, registry=registry, config=cfg.controller
            )
            return await controller.run(requests)
    finally:
        await store.close()


def print_reports(reports: list) -> bool:
    """Print a result table and any diagnostics. Returns True if all succeeded."""
    rows = []
    diagnostics = []
    for report in reports:
        result = report.result
        handle = result.handle
        rows.append(
            [
                report.request.kind,
                report.request.key,
                result.outcome.value,
                handle.resource_id if handle else "",
                f"{report.duration_seconds:.2f}s",
            ]
        )
        for diag in result.diagnostics:
            diagnostics.append(
                [report.request.key, diag.severity.value, diag.summary, diag.detail]
            )

    click.echo(
        tabulate(
            rows,
            headers=["Kind", "Key", "Outcome", "Resource ID", "Time"],
            tablefmt="grid",
        )
    )
    if diagnostics:
        click.echo()
        click.echo(
            tabulate(
                diagnostics,
                headers=["Key", "Severity", "Summary", "Detail"],
                tablefmt="grid",
            )
        )
    return all(report.result.success for report in reports)


def execute(requests: list) -> None:
    cfg = get_cli_config()
    setup_logging(cfg.controller.log_level)
    try:
        reports = asyncio.run(run_requests(cfg, requests))
    except ValueError as e:
        raise click.ClickException(str(e))
    if not print_reports(reports):
        sys.exit(1)


def get_cli_config() -> Config:
    """Load configuration; state must outlive the process, so require postgres."""
    try:
        cfg = load_config()
    except ValueError as e:
        raise click.ClickException(str(e))
    if cfg.database.backend != "postgres":
        raise click.ClickException(
            f"iamctl keeps resource state between runs and needs "
            f"STATE_BACKEND=postgres (got '{cfg.database.backend}')"
        )
    return cfg


@click.group()
def cli():
    """iamctl - reconcile IAM users and email templates"""
    pass


@cli.command()
@click.argument("filename", type=click.Path(exists=True))
@click.option(
    "--no-replace",
    is_flag=True,
    help="Fail instead of replacing resources whose immutable attributes changed",
)
def apply(filename, no_replace):
    """Create or update resources from a YAML/JSON file"""
    get_cli_config()
    requests = [
        ReconcileRequest(
            Action.APPLY,
            manifest["kind"],
            manifest["key"],
            declared=manifest["spec"],
            force_replace=not no_replace,
        )
        for manifest in load_manifests(filename)
    ]
    execute(requests)


@cli.command()
@click.argument("filename", type=click.Path(exists=True))
def plan(filename):
    """Show what apply would change, without calling the identity service"""
    cfg = get_cli_config()
    setup_logging(cfg.controller.log_level)
    manifests = load_manifests(filename)

    async def _plan():
        registry = register_builtin_kinds()
        store = await create_store(cfg)
        try:
            controller = ReconcileController(
                None, store, registry=registry, config=cfg.controller
            )
            rows = []
            for manifest in manifests:
                reconciler = controller.reconciler_for(
                    manifest["kind"], manifest["key"]
                )
                change_plan = await reconciler.diff(manifest["spec"])
                if change_plan is None:
                    rows.append([manifest["kind"], manifest["key"], "create", ""])
                elif not change_plan.has_changes:
                    rows.append([manifest["kind"], manifest["key"], "no-op", ""])
                else:
                    action = (
                        "replace" if change_plan.requires_replacement else "update"
                    )
                    rows.append(
                        [
                            manifest["kind"],
                            manifest["key"],
                            action,
                            ", ".join(sorted(change_plan.changed)),
                        ]
                    )
            return rows
        finally:
            await store.close()

    try:
        rows = asyncio.run(_plan())
    except (ReconcileError, ValueError) as e:
        raise click.ClickException(str(e))
    click.echo(
        tabulate(rows, headers=["Kind", "Key", "Action", "Changes"], tablefmt="grid")
    )


@cli.command()
@click.argument("kind")
@click.argument("key")
def refresh(kind, key):
    """Read a managed resource back from the identity service"""
    get_cli_config()
    execute([ReconcileRequest(Action.REFRESH, kind, key)])


@cli.command()
@click.argument("kind")
@click.argument("key")
@click.confirmation_option(prompt="Are you sure you want to destroy this resource?")
def destroy(kind, key):
    """Delete a managed resource"""
    get_cli_config()
    execute([ReconcileRequest(Action.DESTROY, kind, key)])


@cli.command(name="import")
@click.argument("kind")
@click.argument("key")
@click.argument("resource_id")
@click.option("--organization", "-o", default="", help="Managing organization ID")
def import_(kind, key, resource_id, organization):
    """Bind an existing remote resource to a key"""
    get_cli_config()
    execute(
        [
            ReconcileRequest(
                Action.IMPORT,
                kind,
                key,
                resource_id=resource_id,
                managing_organization=organization,
            )
        ]
    )


if __name__ == "__main__":
    cli()

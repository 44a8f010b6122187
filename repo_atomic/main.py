"""CLI entry point for repo-atomic."""

import sys
from collections.abc import Callable
from pathlib import Path

import click
import structlog
from click.core import ParameterSource

from repo_atomic.adapters.filesystem import atomic_write
from repo_atomic.adapters.git import GitRepository
from repo_atomic.adapters.hosting import HostingClient
from repo_atomic.adapters.provisioning import ProvisioningRunner
from repo_atomic.config.settings import AtomicSettings
from repo_atomic.engine.registry import TransactionRegistry
from repo_atomic.engine.snapshot import SnapshotCapturer
from repo_atomic.engine.transaction import Transaction
from repo_atomic.enums import TransactionState
from repo_atomic.exceptions import ConfigurationError, RepoAtomicError
from repo_atomic.utils.logging_config import configure_logging
from repo_atomic.workflows import (
    build_patch_transaction,
    build_provisioning_transaction,
    build_release_transaction,
)

log = structlog.get_logger(__name__)

DEFAULT_CONFIG = "repo-atomic.yaml"

EXIT_CODES = {
    TransactionState.COMMITTED: 0,
    TransactionState.ROLLED_BACK: 1,
    TransactionState.ABORTED: 1,
    TransactionState.FAILED: 2,
}


@click.group()
@click.option("--config", default=DEFAULT_CONFIG, show_default=True, help="Path to configuration file")
@click.option("--log-level", default=None, help="Logging level (overrides the configuration)")
@click.pass_context
def cli(ctx: click.Context, config: str, log_level: str | None) -> None:
    """repo-atomic: All-or-nothing repository and infrastructure changes."""
    configure_logging(log_level or "INFO")

    config_path = Path(config)
    explicit = ctx.get_parameter_source("config") != ParameterSource.DEFAULT
    try:
        if config_path.exists() or explicit:
            settings = AtomicSettings.from_yaml(config_path)
        else:
            settings = AtomicSettings()
    except ConfigurationError as e:
        click.echo(f"Error: {e.message}", err=True)
        log.debug("config_error", exc_info=True)
        sys.exit(1)
    except Exception as e:
        click.echo(f"Unexpected error loading configuration: {e}", err=True)
        log.error("config_error_unexpected", exc_info=True)
        sys.exit(1)

    configure_logging(log_level or settings.logging.level, json_output=settings.logging.json_output)
    ctx.obj = {"settings": settings}


@cli.command()
@click.option("--branch", required=True, help="Branch to create for the patch")
@click.option("--message", "-m", required=True, help="Commit message")
@click.option("--base", default=None, help="Base branch (default: repository.default_branch)")
@click.option("--push", is_flag=True, help="Push the branch to the remote")
@click.option("--issue", "create_issue", is_flag=True, help="Open a tracking issue")
@click.option("--pr", "create_pr", is_flag=True, help="Open a pull request (implies --push)")
@click.option("--label", "labels", multiple=True, help="Label for the issue or pull request")
@click.option("--description", default=None, help="Transaction description (default: commit subject)")
@click.option("--report-file", type=click.Path(dir_okay=False, path_type=Path), help="Write JSON report here")
@click.option("--no-auto-commit", is_flag=True, help="Ask for confirmation before committing")
@click.pass_context
def patch(
    ctx: click.Context,
    branch: str,
    message: str,
    base: str | None,
    push: bool,
    create_issue: bool,
    create_pr: bool,
    labels: tuple[str, ...],
    description: str | None,
    report_file: Path | None,
    no_auto_commit: bool,
) -> None:
    """Commit the working tree changes on a new branch, atomically."""
    settings: AtomicSettings = ctx.obj["settings"]

    def build(registry: TransactionRegistry, repo: GitRepository) -> Transaction:
        hosting = _hosting_client(settings) if (create_issue or create_pr) else None
        if hosting is not None:
            ctx.call_on_close(hosting.close)
        return build_patch_transaction(
            registry,
            repo,
            description=description or message.splitlines()[0],
            branch=branch,
            commit_message=message,
            base_branch=base or settings.repository.default_branch,
            push=push or create_pr,
            hosting=hosting,
            create_issue=create_issue,
            create_pr=create_pr,
            labels=labels,
            auto_commit=not no_auto_commit,
        )

    _run_command("patch", settings, build, report_file)


@cli.command()
@click.option("--version", "version", required=True, help="Version to release (MAJOR.MINOR.PATCH)")
@click.option("--version-file", default="VERSION", show_default=True, help="File holding the version")
@click.option("--message", "-m", default=None, help="Commit and tag message")
@click.option("--push", is_flag=True, help="Push the branch and the tag")
@click.option("--report-file", type=click.Path(dir_okay=False, path_type=Path), help="Write JSON report here")
@click.pass_context
def release(
    ctx: click.Context,
    version: str,
    version_file: str,
    message: str | None,
    push: bool,
    report_file: Path | None,
) -> None:
    """Bump the version file, commit and tag a release, atomically."""
    settings: AtomicSettings = ctx.obj["settings"]

    def build(registry: TransactionRegistry, repo: GitRepository) -> Transaction:
        return build_release_transaction(
            registry,
            repo,
            version=version,
            version_file=version_file,
            message=message,
            push=push,
        )

    _run_command("release", settings, build, report_file)


@cli.command()
@click.option("--planfile", default="repo-atomic.tfplan", show_default=True, help="Plan file to write")
@click.option("--description", default="Provision infrastructure", help="Transaction description")
@click.option("--report-file", type=click.Path(dir_okay=False, path_type=Path), help="Write JSON report here")
@click.pass_context
def provision(ctx: click.Context, planfile: str, description: str, report_file: Path | None) -> None:
    """Plan and apply infrastructure changes, destroying them on failure."""
    settings: AtomicSettings = ctx.obj["settings"]

    def build(registry: TransactionRegistry, repo: GitRepository) -> Transaction:
        config = settings.require_provisioning()
        runner = ProvisioningRunner(
            binary=config.binary,
            working_dir=config.working_dir,
            var_files=config.var_files,
            auto_approve=config.auto_approve,
        )
        return build_provisioning_transaction(registry, runner, description=description, planfile=planfile)

    _run_command("provision", settings, build, report_file)


@cli.command("check-config")
@click.pass_context
def check_config(ctx: click.Context) -> None:
    """Validate the configuration and print a summary."""
    settings: AtomicSettings = ctx.obj["settings"]
    txn = settings.transaction

    click.echo("Configuration OK")
    click.echo(f"  Repository:    {settings.repository_path} (remote {settings.repository.remote})")
    click.echo(f"  Transactions:  max {txn.max_operations} operations, timeout {txn.timeout_minutes:g} min")
    click.echo(f"  Auto-commit:   {'yes' if txn.auto_commit else 'no'}")
    click.echo(f"  Isolation:     {txn.isolation_level}")
    if settings.hosting is not None:
        click.echo(f"  Hosting:       {settings.hosting.base_url} ({settings.hosting.owner}/{settings.hosting.name})")
    else:
        click.echo("  Hosting:       not configured")
    if settings.provisioning is not None:
        click.echo(f"  Provisioning:  {settings.provisioning.binary} in {settings.provisioning.working_dir}")
    else:
        click.echo("  Provisioning:  not configured")


def _run_command(
    name: str,
    settings: AtomicSettings,
    build: Callable[[TransactionRegistry, GitRepository], Transaction],
    report_file: Path | None,
) -> None:
    """Build and run one workflow transaction, then exit with its outcome."""
    try:
        repo = GitRepository(settings.repository_path, remote=settings.repository.remote)
        registry = _create_registry(settings, repo)
        with registry:
            txn = build(registry, repo)
            _run_transaction(txn)
            _print_summary(txn)
            if report_file is not None:
                _write_report(txn, report_file)
        sys.exit(EXIT_CODES.get(txn.state, 2))
    except RepoAtomicError as e:
        click.echo(f"Error: {e.message}", err=True)
        log.debug(f"{name}_error", exc_info=True)
        sys.exit(1)
    except KeyboardInterrupt:
        click.echo("\nInterrupted by user", err=True)
        sys.exit(130)


def _create_registry(settings: AtomicSettings, repo: GitRepository) -> TransactionRegistry:
    capturer = SnapshotCapturer(
        settings.repository_path,
        source=repo,
        environment_allowlist=settings.transaction.environment_allowlist,
    )
    return TransactionRegistry(
        max_history=settings.transaction.history_size,
        capturer=capturer,
        **settings.transaction.transaction_defaults(),
    )


def _hosting_client(settings: AtomicSettings) -> HostingClient:
    config = settings.require_hosting()
    return HostingClient(
        str(config.base_url),
        config.api_token.get_secret_value(),
        config.owner,
        config.name,
        timeout=config.timeout,
    )


def _run_transaction(txn: Transaction) -> None:
    """Prepare and execute; confirm the commit interactively when required.

    An interrupt while operations run rolls the transaction back before the
    interrupt propagates.
    """
    with txn:
        if txn.prepare() != TransactionState.PREPARED:
            return
        txn.execute()
        if txn.awaiting_commit:
            if click.confirm(f"All {len(txn.operations)} operations succeeded. Commit?", default=True):
                txn.commit()
            else:
                txn.rollback("declined at commit confirmation")


def _print_summary(txn: Transaction) -> None:
    report = txn.report()
    metrics = report.metrics
    color = {"committed": "green", "failed": "red"}.get(report.state.value, "yellow")

    click.echo(f"Transaction {report.transaction_id}: {report.description}")
    click.secho(f"  State:       {report.state.value}", fg=color, bold=True)
    click.echo(
        f"  Operations:  {metrics['succeeded']}/{metrics['total_ops']} succeeded, "
        f"{metrics['failed']} failed, {metrics['rolled_back']} rolled back"
    )
    click.echo(f"  Duration:    {metrics['duration']:.2f}s")
    if report.error:
        click.echo(f"  Error:       {report.error}")
    for warning in report.rollback_warnings:
        click.secho(f"  Warning:     {warning['operation_id']}: {warning['warning']}", fg="yellow")
    if report.requires_intervention:
        click.secho("  Manual intervention required. Rollback failed for:", fg="red", bold=True, err=True)
        for failure in report.rollback_failures:
            click.secho(f"    - {failure['operation_id']}: {failure['error']}", fg="red", err=True)


def _write_report(txn: Transaction, report_file: Path) -> None:
    atomic_write(report_file, txn.report().to_json())
    log.info("report_written", transaction_id=txn.id, path=str(report_file))


if __name__ == "__main__":
    cli()

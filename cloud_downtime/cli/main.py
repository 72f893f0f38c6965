"""
Main CLI entry point for Cloud Downtime.

Runs the downtime scheduler and gives the operator a view of groups,
windows and fleet state.
"""

import functools
import logging
import re
import sys
from pathlib import Path
from typing import Optional, Tuple

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.prompt import Confirm
from rich.table import Table

from cloud_downtime.auth.aws_auth import create_cloudformation_template
from cloud_downtime.cli.runtime import Runtime
from cloud_downtime.core.config import REGION_PATTERN, ConfigManager
from cloud_downtime.core.exceptions import (
    AuthenticationError, AuthorizationError, CloudDowntimeError, ConfigurationError,
    NotFoundError, TransientProviderError, ValidationError
)
from cloud_downtime.services.models import ApplyResult, DesiredState, GroupMember, Provider


console = Console()

# Exit codes for different error types
EXIT_SUCCESS = 0
EXIT_GENERAL_ERROR = 1
EXIT_CONFIG_ERROR = 2
EXIT_AUTH_ERROR = 3
EXIT_PROVIDER_ERROR = 4
EXIT_NOT_FOUND = 5
EXIT_USER_CANCELLED = 130


def configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(name)s  %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
        handlers=[RichHandler(console=console, show_path=False)],
        force=True
    )
    # SDK wire logging is far too chatty at DEBUG
    for noisy in ('botocore', 'boto3', 'urllib3', 'azure'):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def handle_errors(func):
    """Translate Cloud Downtime errors into messages and exit codes."""

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except KeyboardInterrupt:
            console.print("\n⚠️  [yellow]Operation cancelled by user[/yellow]")
            sys.exit(EXIT_USER_CANCELLED)
        except ConfigurationError as e:
            console.print(f"❌ [red]Configuration error: {e}[/red]")
            sys.exit(EXIT_CONFIG_ERROR)
        except AuthenticationError as e:
            console.print(f"❌ [red]Authentication error: {e}[/red]")
            sys.exit(EXIT_AUTH_ERROR)
        except AuthorizationError as e:
            console.print(f"❌ [red]Permission denied: {e}[/red]")
            sys.exit(EXIT_AUTH_ERROR)
        except TransientProviderError as e:
            console.print(f"❌ [red]Provider error: {e}[/red]")
            sys.exit(EXIT_PROVIDER_ERROR)
        except NotFoundError as e:
            console.print(f"❌ [red]{e}[/red]")
            sys.exit(EXIT_NOT_FOUND)
        except CloudDowntimeError as e:
            console.print(f"❌ [red]{e}[/red]")
            sys.exit(EXIT_GENERAL_ERROR)

    return wrapper


def parse_member(value: str) -> GroupMember:
    """Parse ``provider:account:instance[@region]`` into a group member.

    The ``@region`` suffix places an EC2 instance outside the account's
    session region; Azure VM ids already carry their location.

    Raises:
        ValidationError: If the value is not in that form or the provider is unknown
    """
    parts = value.split(':', 2)
    if len(parts) != 3 or not all(parts):
        raise ValidationError(f"Invalid member '{value}'. Expected provider:account:instance[@region]")

    provider_name, account_id, instance_id = parts
    try:
        provider = Provider(provider_name.lower())
    except ValueError:
        raise ValidationError(f"Unknown provider '{provider_name}'. Expected aws or azure")

    region = None
    if '@' in instance_id:
        if provider is not Provider.AWS:
            raise ValidationError(f"Invalid member '{value}'. Only AWS members take an @region suffix")
        instance_id, region = instance_id.rsplit('@', 1)
        if not instance_id or not re.match(REGION_PATTERN, region):
            raise ValidationError(f"Invalid member '{value}'. Expected aws:account:instance@region")

    return GroupMember(provider, account_id, instance_id, region)


@click.group()
@click.option("--config-dir", type=click.Path(file_okay=False, path_type=Path), help="Configuration directory (defaults to ~/.cloud-downtime)")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.version_option(version="1.0.0")
@click.pass_context
def cli(ctx: click.Context, config_dir: Optional[Path], verbose: bool) -> None:
    """
    Cloud Downtime - scheduled stop/start for groups of AWS and Azure instances.
    """
    configure_logging(verbose)
    ctx.ensure_object(dict)
    if 'runtime' not in ctx.obj:
        try:
            ctx.obj['runtime'] = Runtime(ConfigManager(config_dir))
        except ValueError as e:
            console.print(f"❌ [red]Configuration error: {e}[/red]")
            sys.exit(EXIT_CONFIG_ERROR)
    ctx.call_on_close(ctx.obj['runtime'].close)


@cli.command()
@click.pass_obj
@handle_errors
def run(obj) -> None:
    """Run the downtime scheduler until interrupted."""
    scheduler = obj['runtime'].scheduler
    console.print(f"⏳ [bold]Checking downtimes every {scheduler.interval_seconds}s[/bold] (Ctrl+C to stop)")
    try:
        scheduler.run_forever()
    finally:
        scheduler.stop()


@cli.command()
@click.pass_obj
@handle_errors
def tick(obj) -> None:
    """Run a single reconciliation pass and show what it did."""
    runtime = obj['runtime']
    if not runtime.scheduler.run_once():
        console.print("[yellow]A tick is already running[/yellow]")
        return

    report = runtime.reconciler.last_report
    if report is None or report.windows == 0:
        console.print("No scheduled downtimes found.")
        return

    table = Table(title="Downtime tick")
    table.add_column("Group")
    table.add_column("Result")

    for name, desired in report.applied.items():
        table.add_row(name, f"[green]{desired.value}[/green]")
    for name in report.already_handled:
        table.add_row(name, "already handled")
    for name in report.not_in_scope:
        table.add_row(name, "window not open yet")
    for name in report.in_flight:
        table.add_row(name, "[yellow]previous dispatch in flight[/yellow]")
    for name in report.invalid:
        table.add_row(name, "[yellow]invalid window[/yellow]")
    for name, reason in report.skipped.items():
        table.add_row(name, f"skipped: {reason}")
    for name, reason in report.failed.items():
        table.add_row(name, f"[red]failed: {reason}[/red]")

    console.print(table)


@cli.command()
@click.pass_obj
@handle_errors
def status(obj) -> None:
    """Show every discoverable instance with its group and schedule."""
    runtime = obj['runtime']
    accounts = runtime.known_accounts()
    if not any(accounts.values()):
        console.print("⚠️  [yellow]No authenticated accounts. Run 'cloud-downtime auth aws' or 'auth azure' first.[/yellow]")
        return

    with console.status("Discovering instances..."):
        fleet = runtime.discovery().discover(accounts)

    table = Table(title=f"Fleet ({len(fleet)} instances)")
    for column in ("Provider", "Account", "Instance", "State", "Region", "Group", "Schedule"):
        table.add_column(column)

    for item in sorted(fleet, key=lambda f: (f.instance.provider.value, f.instance.account_id, f.instance.instance_id)):
        instance = item.instance
        table.add_row(
            instance.provider.value,
            instance.account_id,
            instance.instance_id,
            instance.state.value,
            instance.region or "-",
            item.group_name or "-",
            item.schedule
        )

    console.print(table)


@cli.group()
def schedule() -> None:
    """Manage group downtime windows."""


@schedule.command("set")
@click.argument("group_name")
@click.argument("start")
@click.argument("end")
@click.pass_obj
@handle_errors
def schedule_set(obj, group_name: str, start: str, end: str) -> None:
    """Set GROUP_NAME's downtime window to START..END (ISO-8601)."""
    window = obj['runtime'].downtime_store.upsert_window(group_name, start, end)
    console.print(f"✅ Downtime for group '{group_name}' set to {window.describe()}")


@schedule.command("clear")
@click.argument("group_name")
@click.pass_obj
@handle_errors
def schedule_clear(obj, group_name: str) -> None:
    """Remove GROUP_NAME's downtime window."""
    if not obj['runtime'].downtime_store.delete_window(group_name):
        raise NotFoundError(f"No scheduled downtime found for group '{group_name}'")
    console.print(f"✅ Removed downtime for group '{group_name}'")


@schedule.command("list")
@click.pass_obj
@handle_errors
def schedule_list(obj) -> None:
    """List all downtime windows."""
    windows = obj['runtime'].downtime_store.get_all_windows()
    if not windows:
        console.print("No scheduled downtimes found.")
        return

    table = Table(title="Downtime windows")
    table.add_column("Group")
    table.add_column("Start")
    table.add_column("End")
    table.add_column("Valid")

    for window in windows:
        try:
            window.parse()
            valid = "[green]yes[/green]"
        except ValidationError as e:
            valid = f"[red]no ({e.details})[/red]"
        table.add_row(window.group_name, str(window.start), str(window.end), valid)

    console.print(table)


@cli.group()
def group() -> None:
    """Manage instance groups."""


@group.command("create")
@click.argument("name")
@click.option("--member", "-m", "members", multiple=True, help="provider:account:instance[@region], repeatable")
@click.pass_obj
@handle_errors
def group_create(obj, name: str, members: Tuple[str, ...]) -> None:
    """Create group NAME with the given members."""
    parsed = [parse_member(m) for m in members]
    obj['runtime'].membership_store.create_group(name, parsed)
    console.print(f"✅ Group '{name}' created with {len(parsed)} members")


@group.command("delete")
@click.argument("name")
@click.pass_obj
@handle_errors
def group_delete(obj, name: str) -> None:
    """Delete group NAME and its downtime window."""
    runtime = obj['runtime']
    if not runtime.membership_store.delete_group(name):
        raise NotFoundError(f"Group '{name}' does not exist")
    runtime.downtime_store.delete_window(name)
    console.print(f"✅ Group '{name}' deleted")


@group.command("add-member")
@click.argument("name")
@click.option("--member", "-m", "members", multiple=True, required=True, help="provider:account:instance[@region], repeatable")
@click.pass_obj
@handle_errors
def group_add_member(obj, name: str, members: Tuple[str, ...]) -> None:
    """Add members to group NAME."""
    parsed = [parse_member(m) for m in members]
    obj['runtime'].membership_store.add_members(name, parsed)
    console.print(f"✅ Added {len(parsed)} members to group '{name}'")


@group.command("remove-member")
@click.argument("name")
@click.option("--member", "-m", "members", multiple=True, required=True, help="provider:account:instance, repeatable")
@click.pass_obj
@handle_errors
def group_remove_member(obj, name: str, members: Tuple[str, ...]) -> None:
    """Remove members from group NAME."""
    parsed = [parse_member(m) for m in members]
    removed = obj['runtime'].membership_store.remove_members(name, parsed)
    if not removed:
        console.print(f"⚠️  [yellow]None of those instances are members of group '{name}'[/yellow]")
        return
    console.print(f"✅ Removed {removed} members from group '{name}'")


@group.command("list")
@click.pass_obj
@handle_errors
def group_list(obj) -> None:
    """List groups and their member counts."""
    store = obj['runtime'].membership_store
    names = store.list_groups()
    if not names:
        console.print("No groups defined.")
        return

    table = Table(title="Groups")
    table.add_column("Group")
    table.add_column("AWS")
    table.add_column("Azure")
    for name in names:
        members = store.get_members(name)
        table.add_row(
            name,
            str(len(members.get(Provider.AWS, []))),
            str(len(members.get(Provider.AZURE, [])))
        )
    console.print(table)


@cli.group()
def auth() -> None:
    """Authenticate provider accounts."""


@auth.command("aws")
@click.argument("role_arn")
@click.pass_obj
@handle_errors
def auth_aws(obj, role_arn: str) -> None:
    """Assume ROLE_ARN and store the session for its account."""
    account_id = obj['runtime'].adapters[Provider.AWS].authenticate(role_arn)
    console.print(f"✅ Connected to AWS account {account_id}")


@auth.command("azure")
@click.argument("tenant_id")
@click.pass_obj
@handle_errors
def auth_azure(obj, tenant_id: str) -> None:
    """Obtain an Azure management token for TENANT_ID."""
    account_id = obj['runtime'].adapters[Provider.AZURE].authenticate(tenant_id)
    console.print(f"✅ Connected to Azure tenant {account_id}")


@auth.command("template")
@click.argument("trusted_principal_arn")
def auth_template(trusted_principal_arn: str) -> None:
    """Print the CloudFormation template for the cross-account EC2 role."""
    click.echo(create_cloudformation_template(trusted_principal_arn))


@auth.command("region")
@click.argument("account_id")
@click.argument("region")
@click.pass_obj
@handle_errors
def auth_region(obj, account_id: str, region: str) -> None:
    """Switch AWS ACCOUNT_ID's session to REGION."""
    obj['runtime'].adapters[Provider.AWS].change_region(account_id, region)
    console.print(f"✅ AWS account {account_id} now uses region {region}")


@cli.group()
def instances() -> None:
    """Query, stop, start or terminate individual instances."""


def instance_arguments(func):
    """Arguments shared by every instances subcommand."""
    func = click.option("--region", help="EC2 region of the instances (defaults to the account's region)")(func)
    func = click.argument("instance_ids", nargs=-1, required=True)(func)
    func = click.argument("account_id")(func)
    func = click.argument("provider", type=click.Choice([p.value for p in Provider], case_sensitive=False))(func)
    return func


def print_result(result: ApplyResult) -> None:
    if result.is_noop:
        console.print(f"⚠️  [yellow]No instances needed to be {result.operation}[/yellow]")
    else:
        console.print(f"✅ {result.operation.capitalize()}: {', '.join(result.acted_on)}")
    for instance_id, state in result.skipped.items():
        console.print(f"   skipped {instance_id} ({state.value})")


@instances.command("list")
@instance_arguments
@click.pass_obj
@handle_errors
def instances_list(obj, provider: str, account_id: str, instance_ids: Tuple[str, ...], region: Optional[str]) -> None:
    """Show the current state of INSTANCE_IDS."""
    adapter = obj['runtime'].adapters[Provider(provider.lower())]
    refs = adapter.list_instances(account_id, instance_ids, region=region)

    table = Table(title=f"{adapter.provider.value} account {account_id}")
    table.add_column("Instance")
    table.add_column("State")
    table.add_column("Region")
    for ref in refs:
        table.add_row(ref.instance_id, ref.state.value, ref.region or "-")
    console.print(table)


@instances.command("stop")
@instance_arguments
@click.pass_obj
@handle_errors
def instances_stop(obj, provider: str, account_id: str, instance_ids: Tuple[str, ...], region: Optional[str]) -> None:
    """Stop the running instances among INSTANCE_IDS."""
    adapter = obj['runtime'].adapters[Provider(provider.lower())]
    print_result(adapter.apply_desired_state(account_id, instance_ids, DesiredState.STOPPED, region=region))


@instances.command("start")
@instance_arguments
@click.pass_obj
@handle_errors
def instances_start(obj, provider: str, account_id: str, instance_ids: Tuple[str, ...], region: Optional[str]) -> None:
    """Start the stopped instances among INSTANCE_IDS."""
    adapter = obj['runtime'].adapters[Provider(provider.lower())]
    print_result(adapter.apply_desired_state(account_id, instance_ids, DesiredState.STARTED, region=region))


@instances.command("terminate")
@instance_arguments
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation")
@click.pass_obj
@handle_errors
def instances_terminate(
    obj, provider: str, account_id: str, instance_ids: Tuple[str, ...], region: Optional[str], yes: bool
) -> None:
    """Terminate INSTANCE_IDS. This cannot be undone."""
    if not yes and not Confirm.ask(f"⚠️  Terminate {len(instance_ids)} instances permanently?", console=console):
        console.print("Cancelled.")
        return

    adapter = obj['runtime'].adapters[Provider(provider.lower())]
    print_result(adapter.terminate_instances(account_id, instance_ids, region=region))


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()

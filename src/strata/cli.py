"""strata command line interface.

Commands:
    plan FILE          Show the changes needed to reach FILE's declarations
    apply FILE         Plan and apply
    state list         List resources in observed state
    state show ID      Show one observed resource
    autoscale FILE     Run the autoscaling controller for FILE's policies
    config init        Write a default config file
"""

import json
import logging
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click
from rich.console import Console
from rich.table import Table

from strata import __version__
from strata.apply_executor import ApplyReport, ChangeState
from strata.click_group import StrataGroup
from strata.config_manager import DEFAULT_CONFIG_FILE, ConfigManager, EngineConfig
from strata.declarations import YamlDeclarationSource
from strata.engine import Provisioner
from strata.errors import StrataError
from strata.plan_engine import ChangeKind, ChangeSet
from strata.remote import load_adapter
from strata.resource_model import ResourceId
from strata.state_store import JsonFileStateStore

logger = logging.getLogger(__name__)
console = Console()

DEFAULT_ADAPTER = "strata.remote:LocalControlPlane"

KIND_STYLES = {
    ChangeKind.CREATE: "[green]+ create[/green]",
    ChangeKind.UPDATE: "[yellow]~ update[/yellow]",
    ChangeKind.DELETE: "[red]- delete[/red]",
    ChangeKind.NOOP: "[dim]  no-op[/dim]",
}

STATE_STYLES = {
    ChangeState.APPLIED: "green",
    ChangeState.FAILED: "red",
    ChangeState.SKIPPED: "yellow",
}


@dataclass
class CliContext:
    config: EngineConfig
    adapter_spec: str
    state_file: Path

    def provisioner(self) -> Provisioner:
        adapter = load_adapter(self.adapter_spec)
        store = JsonFileStateStore(self.state_file)
        return Provisioner(adapter, store, self.config)


def _fail(message: str) -> None:
    console.print(f"[red]Error: {message}[/red]")
    sys.exit(1)


def render_plan(change_set: ChangeSet, show_noop: bool = False) -> Table:
    table = Table(title="Plan")
    table.add_column("Action")
    table.add_column("Resource", style="cyan")
    table.add_column("Changed attributes")
    for change in change_set:
        if change.kind == ChangeKind.NOOP and not show_noop:
            continue
        changed = "" if change.kind == ChangeKind.DELETE else ", ".join(change.changed_attributes)
        table.add_row(KIND_STYLES[change.kind], str(change.identity), changed)
    return table


def render_report(report: ApplyReport) -> Table:
    table = Table(title="Apply report")
    table.add_column("Resource", style="cyan")
    table.add_column("Action")
    table.add_column("State")
    table.add_column("Attempts", justify="right")
    table.add_column("Detail")
    for outcome in report.outcomes:
        if outcome.change.kind == ChangeKind.NOOP:
            continue
        style = STATE_STYLES.get(outcome.state, "white")
        detail = outcome.error or ""
        if outcome.reason is not None:
            detail = f"{outcome.reason.value}: {detail}"
        table.add_row(
            str(outcome.identity),
            outcome.change.kind.value,
            f"[{style}]{outcome.state.value}[/{style}]",
            str(outcome.attempts),
            detail,
        )
    return table


@click.group(cls=StrataGroup, context_settings={"help_option_names": ["--help", "-h"]})
@click.option("--config", "config_path", type=click.Path(), help="Config file (TOML)")
@click.option("--state-file", type=click.Path(), help="Observed state file (JSON)")
@click.option(
    "--adapter",
    default=DEFAULT_ADAPTER,
    show_default=True,
    help="Control plane adapter as module:factory",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.version_option(version=__version__)
@click.pass_context
def main(
    ctx: click.Context,
    config_path: str | None,
    state_file: str | None,
    adapter: str,
    verbose: bool,
) -> None:
    """strata - dependency-ordered provisioning with target-tracking autoscaling.

    \b
    EXAMPLES:
        $ strata plan deployment.yaml
        $ strata apply deployment.yaml --yes
        $ strata state list
        $ strata autoscale deployment.yaml --ticks 10
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    try:
        config = ConfigManager.load_config(config_path)
    except StrataError as e:
        _fail(str(e))
    state_path = Path(state_file).expanduser() if state_file else config.state_path
    ctx.obj = CliContext(config=config, adapter_spec=adapter, state_file=state_path)


@main.command(name="plan")
@click.argument("declarations", type=click.Path(path_type=Path))
@click.option("--all", "show_all", is_flag=True, help="Include unchanged resources")
@click.option("--json", "as_json", is_flag=True, help="Print the plan as JSON")
@click.pass_obj
def plan_command(obj: CliContext, declarations: Path, show_all: bool, as_json: bool):
    """Show the changes needed to reach the declared state."""
    try:
        provisioner = obj.provisioner()
        change_set = provisioner.plan(YamlDeclarationSource(declarations).load().desired)
    except StrataError as e:
        _fail(str(e))

    if as_json:
        click.echo(json.dumps(_plan_to_dict(change_set), indent=2, default=str))
        return

    if not change_set.has_changes:
        console.print("[green]No changes. Infrastructure matches the declarations.[/green]")
        if not show_all:
            return
    console.print(render_plan(change_set, show_noop=show_all))
    summary = change_set.summary()
    console.print(
        f"Plan: {summary['create']} to create, {summary['update']} to update, "
        f"{summary['delete']} to delete."
    )


def _plan_to_dict(change_set: ChangeSet) -> dict[str, Any]:
    return {
        "summary": change_set.summary(),
        "changes": [
            {
                "identity": str(change.identity),
                "kind": change.kind.value,
                "changed_attributes": list(change.changed_attributes),
                "depends_on": sorted(str(dep) for dep in change.depends_on),
            }
            for change in change_set
        ],
    }


@main.command(name="apply")
@click.argument("declarations", type=click.Path(path_type=Path))
@click.option("--yes", "-y", is_flag=True, help="Apply without confirmation")
@click.pass_obj
def apply_command(obj: CliContext, declarations: Path, yes: bool):
    """Plan and apply changes for the declared state.

    Re-running after a partial failure picks up where the last run stopped.
    """
    try:
        provisioner = obj.provisioner()
        change_set = provisioner.plan(YamlDeclarationSource(declarations).load().desired)
    except StrataError as e:
        _fail(str(e))

    if not change_set.has_changes:
        console.print("[green]No changes. Infrastructure matches the declarations.[/green]")
        return

    console.print(render_plan(change_set))
    if not yes and not click.confirm("Apply these changes?", default=False):
        console.print("Apply cancelled.")
        return

    report = provisioner.apply(change_set)
    console.print(render_report(report))

    if report.succeeded:
        console.print("[green]Apply complete.[/green]")
        return
    if report.retryable:
        console.print("[yellow]Some changes did not apply; re-run apply to retry them.[/yellow]")
    else:
        console.print("[red]Some changes failed permanently; fix the declarations and re-run.[/red]")
    sys.exit(1)


@main.group(name="state", cls=StrataGroup)
def state_group():
    """Inspect observed state."""


@state_group.command(name="list")
@click.pass_obj
def state_list(obj: CliContext):
    """List resources recorded in observed state."""
    try:
        snapshot = JsonFileStateStore(obj.state_file).snapshot()
    except StrataError as e:
        _fail(str(e))

    if not snapshot:
        console.print("No resources in observed state.")
        return

    table = Table(title=f"Observed state ({obj.state_file})")
    table.add_column("Resource", style="cyan")
    table.add_column("Remote ID")
    table.add_column("Generation", justify="right")
    table.add_column("Depends on")
    for identity in sorted(snapshot):
        record = snapshot[identity]
        table.add_row(
            str(identity),
            record.remote_id,
            str(record.generation),
            ", ".join(sorted(str(dep) for dep in record.depends_on)),
        )
    console.print(table)


@state_group.command(name="show")
@click.argument("identity")
@click.pass_obj
def state_show(obj: CliContext, identity: str):
    """Show one resource (IDENTITY is kind.name) as JSON."""
    try:
        resource_id = ResourceId.parse(identity)
        record = JsonFileStateStore(obj.state_file).get(resource_id)
    except StrataError as e:
        _fail(str(e))

    if record is None:
        _fail(f"{identity} is not in observed state")
    click.echo(json.dumps({"identity": identity, **record.to_dict()}, indent=2, default=str))


@main.command(name="autoscale")
@click.argument("declarations", type=click.Path(path_type=Path))
@click.option("--ticks", type=int, help="Run this many ticks then exit (default: run until Ctrl-C)")
@click.pass_obj
def autoscale_command(obj: CliContext, declarations: Path, ticks: int | None):
    """Run the autoscaling controller for the declared scaling policies."""
    try:
        provisioner = obj.provisioner()
        policies = YamlDeclarationSource(declarations).load().policies
        if not policies:
            _fail("No scaling_policies declared")
        controller = provisioner.autoscaling_controller(policies)
    except StrataError as e:
        _fail(str(e))

    if ticks is not None:
        for tick in range(ticks):
            for decision in controller.tick():
                marker = "[green]applied[/green]" if decision.applied else decision.action
                console.print(
                    f"{decision.target}: {decision.current_capacity} -> "
                    f"{decision.desired_capacity} ({marker}) {decision.reason}"
                )
            if tick < ticks - 1:
                time.sleep(controller.poll_interval)
        return

    handle = controller.start()
    console.print(
        f"Autoscaling {len(controller.targets)} targets every "
        f"{controller.poll_interval:.0f}s. Press Ctrl-C to stop."
    )
    try:
        while handle.running:
            time.sleep(1)
    except KeyboardInterrupt:
        console.print("\nStopping...")
    finally:
        provisioner.stop(handle)


@main.group(name="config", cls=StrataGroup)
def config_group():
    """Manage the strata config file."""


@config_group.command(name="init")
@click.option("--path", type=click.Path(), help="Where to write (default: ~/.strata/config.toml)")
@click.option("--force", is_flag=True, help="Overwrite an existing file")
def config_init(path: str | None, force: bool):
    """Write a config file with default settings."""
    target = Path(path).expanduser() if path else DEFAULT_CONFIG_FILE
    if target.exists() and not force:
        _fail(f"{target} already exists (use --force to overwrite)")
    try:
        written = ConfigManager.save_config(EngineConfig(), target)
    except StrataError as e:
        _fail(str(e))
    console.print(f"[green]Wrote {written}[/green]")


__all__ = ["main", "render_plan", "render_report"]


if __name__ == "__main__":
    main()

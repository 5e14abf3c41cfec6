"""Admin CLI for agent worker hosts."""

import asyncio
from pathlib import Path

import click
from rich.console import Console
from rich.table import Table

from ..core.config import Provider
from ..integrations.github.pr_service import PrService
from ..runners.factory import create_runner
from ..sandbox.lifecycle import (
    SandboxError,
    build_sandbox_name,
    create_sandbox,
    detect_sandbox_support,
    remove_sandbox,
    sandbox_exists,
)
from ..utils.subprocess_utils import SubprocessError, check_command_exists, get_command_output
from ..workspace.worktree_manager import WorktreeManager


console = Console()


@click.group()
@click.option("--project", "-p", default=".", help="Project directory")
@click.pass_context
def cli(ctx, project):
    """Agent worker administration: environment checks and sandbox management."""
    ctx.ensure_object(dict)
    ctx.obj["project"] = Path(project).resolve()


def _tool_version(command: str) -> str:
    try:
        return get_command_output([command, "--version"], timeout=15).splitlines()[0]
    except (SubprocessError, IndexError):
        return "unknown"


async def _runner_versions():
    versions = {}
    for provider in Provider:
        runner = create_runner(provider)
        if await runner.is_available():
            versions[provider.value] = await runner.get_version()
        else:
            versions[provider.value] = None
    return versions


@cli.command()
@click.pass_context
def doctor(ctx):
    """Check that the tools a worker needs are installed."""
    project = ctx.obj["project"]
    console.print("[bold]Agent Worker Environment[/]")

    table = Table()
    table.add_column("Tool")
    table.add_column("Status")
    table.add_column("Details")

    for tool in ("git", "gh", "docker"):
        if check_command_exists(tool):
            table.add_row(tool, "[green]found[/]", _tool_version(tool))
        else:
            table.add_row(tool, "[red]missing[/]", "")

    for name, version in asyncio.run(_runner_versions()).items():
        if version is None:
            table.add_row(name, "[red]missing[/]", "")
        else:
            table.add_row(name, "[green]found[/]", version)

    if check_command_exists("gh"):
        pr_service = PrService(project)
        authenticated = pr_service.is_gh_available()
        table.add_row(
            "gh auth",
            "[green]ok[/]" if authenticated else "[yellow]not authenticated[/]",
            "",
        )
        repo = pr_service.github_repo()
        table.add_row(
            "origin",
            "[green]github[/]" if repo else "[yellow]not github[/]",
            "/".join(repo) if repo else "PR creation unavailable",
        )

    support = detect_sandbox_support()
    table.add_row(
        "docker sandbox",
        "[green]available[/]" if support.available else "[yellow]unavailable[/]",
        support.reason,
    )

    console.print(table)


@cli.group()
def sandbox():
    """Manage docker sandboxes for user-managed mode."""


@sandbox.command("create")
@click.option("--name", "-n", default=None, help="Sandbox name (generated from the project when omitted)")
@click.pass_context
def sandbox_create(ctx, name):
    """Create a sandbox with the project synced in."""
    project = ctx.obj["project"]
    support = detect_sandbox_support()
    if not support.available:
        console.print(f"[red]Error: {support.reason}[/]")
        raise SystemExit(1)

    name = name or build_sandbox_name(project)
    console.print(f"Creating sandbox [bold]{name}[/] for {project}...")
    try:
        asyncio.run(create_sandbox(name, project))
    except SandboxError as e:
        console.print(f"[red]Error: {e}[/]")
        raise SystemExit(1)

    console.print(f"[green]✓ Sandbox {name} created[/]")
    console.print(f"Set sandbox.mode=user_managed and sandbox.name={name} to use it")


@sandbox.command("rm")
@click.argument("name")
def sandbox_rm(name):
    """Remove a sandbox."""
    if asyncio.run(remove_sandbox(name)):
        console.print(f"[green]✓ Sandbox {name} removed[/]")
    else:
        console.print(f"[yellow]Sandbox {name} was not removed (it may not exist)[/]")
        raise SystemExit(1)


@sandbox.command("status")
@click.argument("name")
def sandbox_status(name):
    """Show whether a sandbox is running."""
    if asyncio.run(sandbox_exists(name)):
        console.print(f"[green]{name}: running[/]")
    else:
        console.print(f"[yellow]{name}: not running[/]")
        raise SystemExit(1)


@cli.group()
def worktree():
    """Inspect and clean up task worktrees left by stopped workers."""


@worktree.command("list")
@click.pass_context
def worktree_list(ctx):
    """List agent worktrees of the project."""
    manager = WorktreeManager(ctx.obj["project"])
    try:
        worktrees = manager.list_agent_worktrees()
    except SubprocessError as e:
        console.print(f"[red]Error: {e}[/]")
        raise SystemExit(1)
    if not worktrees:
        console.print("No agent worktrees")
        return

    table = Table()
    table.add_column("Path")
    table.add_column("Branch")
    table.add_column("State")
    for wt in worktrees:
        table.add_row(str(wt.path), wt.branch, "[yellow]prunable[/]" if wt.is_prunable else "ok")
    console.print(table)


@worktree.command("clean")
@click.pass_context
def worktree_clean(ctx):
    """Remove every agent worktree and its branch."""
    manager = WorktreeManager(ctx.obj["project"])
    try:
        manager.prune()
        removed = manager.remove_all()
    except SubprocessError as e:
        console.print(f"[red]Error: {e}[/]")
        raise SystemExit(1)
    console.print(f"[green]✓ Removed {removed} worktree(s)[/]")


if __name__ == "__main__":
    cli()

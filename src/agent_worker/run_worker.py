"""Entry point for running one agent worker process."""

import asyncio
import logging
import os
import signal
import sys
from pathlib import Path
from typing import Optional

import click
from dotenv import load_dotenv
from pydantic import ValidationError

# Load .env file into environment before anything else
load_dotenv()

# Strip CLAUDECODE early so no spawned CLI trips the "nested session" guard
os.environ.pop("CLAUDECODE", None)

from .core.config import WorkerConfig, load_settings, resolve_provider
from .core.worker import AgentWorker
from .utils.rich_logging import setup_rich_logging

REQUIRED_FLAGS = ("agent_id", "workspace_id", "api_url", "api_key", "project_path")


def _flag_name(param: str) -> str:
    return "--" + param.replace("_", "-")


async def _run(config: WorkerConfig, worker_logger) -> int:
    worker = AgentWorker(config, logger=worker_logger)
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, worker.request_shutdown, sig.name)
    return await worker.run()


@click.command(context_settings={"help_option_names": ["-h", "--help"]})
@click.option("--agent-id", help="Agent identity issued by the workspace")
@click.option("--workspace-id", help="Workspace to claim tasks from")
@click.option("--api-url", help="Workspace API base URL")
@click.option("--api-key", help="Workspace API key")
@click.option("--project-path", type=click.Path(file_okay=False, path_type=Path), help="Repository checkout to work in")
@click.option("--sprint-id", default=None, help="Only claim tasks from this sprint")
@click.option("--model", default=None, help="Model passed to the AI CLI")
@click.option("--provider", default=None, help="AI CLI to drive: claude or codex")
@click.option("--use-worktrees", is_flag=True, help="Run each task in its own git worktree")
@click.option("--use-sandbox", is_flag=True, help="Run the AI CLI inside a docker sandbox")
@click.option("--auto-push", is_flag=True, help="Push task branches and open pull requests")
@click.option("--config", "config_path", type=click.Path(dir_okay=False, path_type=Path), default=None,
              help="Worker settings YAML (default: <project>/agent-worker.yaml)")
def main(
    agent_id: Optional[str],
    workspace_id: Optional[str],
    api_url: Optional[str],
    api_key: Optional[str],
    project_path: Optional[Path],
    sprint_id: Optional[str],
    model: Optional[str],
    provider: Optional[str],
    use_worktrees: bool,
    use_sandbox: bool,
    auto_push: bool,
    config_path: Optional[Path],
):
    """Claim workspace tasks and execute them with an AI coding agent."""
    values = {
        "agent_id": agent_id,
        "workspace_id": workspace_id,
        "api_url": api_url,
        "api_key": api_key,
        "project_path": project_path,
    }
    missing = [_flag_name(name) for name in REQUIRED_FLAGS if not values[name]]
    if missing:
        click.echo(f"Error: missing required option(s): {', '.join(missing)}", err=True)
        sys.exit(1)

    project_path = project_path.resolve()
    if not project_path.is_dir():
        click.echo(f"Error: project path does not exist: {project_path}", err=True)
        sys.exit(1)

    try:
        settings = load_settings(config_path, project_path=project_path)
        config = WorkerConfig(
            agent_id=agent_id,
            workspace_id=workspace_id,
            api_url=api_url,
            api_key=api_key,
            project_path=project_path,
            sprint_id=sprint_id,
            provider=resolve_provider(provider),
            model=model,
            use_worktrees=use_worktrees,
            use_sandbox=use_sandbox,
            auto_push=auto_push,
            settings=settings,
        )
    except (ValidationError, ValueError, FileNotFoundError) as e:
        click.echo(f"Error: invalid configuration: {e}", err=True)
        sys.exit(1)

    worker_logger = setup_rich_logging(
        agent_id=agent_id,
        workspace=project_path,
        log_level=settings.log_level,
        use_file=settings.log_to_file,
    )
    logger = logging.getLogger(__name__)

    try:
        exit_code = asyncio.run(_run(config, worker_logger))
    except Exception as e:
        logger.exception(f"Worker crashed: {e}")
        sys.exit(1)
    sys.exit(exit_code)


if __name__ == "__main__":
    main()

from __future__ import annotations

import asyncio
import json
import shlex
from pathlib import Path

import click

from ralph import protocol
from ralph.config import CONFIG_FILENAME, dumps_toml, load_config, save_config
from ralph.errors import DocumentError, UnknownQuestion
from ralph.hosts.base import LoggingNotifier
from ralph.logging_setup import setup_logging
from ralph.questions import QUESTIONS_FILE, QuestionChannel, empty_store
from ralph.registry import SessionRegistry
from ralph.review import REVIEW_STATE_FILE, empty_review_state
from ralph.runner import CommandRunner, Verdict
from ralph.state.documents import DocumentStore
from ralph.state.json_store import JsonStateFile
from ralph.templates import resolve_templates


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _question_channel(repo_root: Path) -> QuestionChannel:
    return QuestionChannel(
        JsonStateFile(repo_root / QUESTIONS_FILE, empty_store),
        SessionRegistry(),
        LoggingNotifier(),
    )


@click.group()
@click.option("--log-level", default="WARNING", show_default=True)
def cli(log_level: str) -> None:
    """Ralph supervisor CLI."""
    log_dir = Path.cwd() / protocol.LOG_DIR
    setup_logging(log_dir if log_dir.is_dir() else None, log_level)


@cli.command("init")
@click.option("--verify", "verify_command", default=None, help="Verification command line.")
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def init_command(verify_command: str | None, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    config = load_config(config_path)
    if verify_command is not None:
        try:
            config.verify.command = shlex.split(verify_command)
        except ValueError as exc:
            raise click.ClickException(f"Cannot parse verify command: {exc}") from exc
    save_config(config_path, config)

    store = DocumentStore(repo_root)
    templates = resolve_templates(config.templates, repo_root)
    try:
        created = protocol.bootstrap_protocol_files(store, templates)
    except DocumentError as exc:
        raise click.ClickException(str(exc)) from exc
    (repo_root / protocol.LOG_DIR).mkdir(parents=True, exist_ok=True)

    click.echo(f"Initialized Ralph in {repo_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Verify: {shlex.join(config.verify.command) or '(none)'}")
    if created:
        click.echo(f"Created: {', '.join(created)}")


@cli.command("verify")
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def verify_command(config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config = load_config(_resolve_config_path(repo_root, config_value))
    result = asyncio.run(CommandRunner().verify(config, repo_root))
    click.echo(json.dumps(result.to_dict(), ensure_ascii=False, indent=2))
    if result.verdict is not Verdict.PASS:
        raise SystemExit(1)


@cli.command("questions")
@click.option("--all", "include_all", is_flag=True, default=False)
def questions_command(include_all: bool) -> None:
    channel = _question_channel(Path.cwd().resolve())
    items = channel.questions() if include_all else channel.pending()
    if not items:
        click.echo("No pending questions." if not include_all else "No questions.")
        return
    click.echo(json.dumps(items, ensure_ascii=False, indent=2))


@cli.command("respond")
@click.argument("question_id")
@click.argument("answer")
def respond_command(question_id: str, answer: str) -> None:
    channel = _question_channel(Path.cwd().resolve())
    try:
        outcome = channel.respond(question_id, answer)
    except UnknownQuestion as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Answered {question_id}")
    if outcome["superseded"]:
        click.echo(f"Superseded previous answer: {outcome['previous_answer']}")


@cli.command("review-state")
def review_state_command() -> None:
    state = JsonStateFile(Path.cwd().resolve() / REVIEW_STATE_FILE, empty_review_state)
    click.echo(json.dumps(state.read(), ensure_ascii=False, indent=2))


@cli.command("config")
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def config_command(config_value: str) -> None:
    config = load_config(_resolve_config_path(Path.cwd().resolve(), config_value))
    click.echo(dumps_toml(config), nl=False)

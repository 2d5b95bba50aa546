import json
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import typer
import yaml

from natspack import __version__
from natspack.core.common import DateTimeEncoder
from natspack.core.errors import classify_nats_error
from natspack.core.logger import set_json_logs, setup_logger
from natspack.core.render import create_environment
from natspack.tools.nats import PollingTrigger, RealtimeTrigger, execute_nats_task

logger = setup_logger(__name__, include_location=True)

cli_app = typer.Typer(help="Run NATS tasks and triggers from YAML task files.")


def _echo_json(value: Any, indent: Optional[int] = 2) -> None:
    typer.echo(json.dumps(value, cls=DateTimeEncoder, indent=indent, ensure_ascii=False))


def parse_overrides(items: Optional[List[str]]) -> Dict[str, Any]:
    """Parse ``key=value`` pairs; values are read as YAML scalars."""
    overrides = {}
    for item in items or []:
        if '=' not in item:
            raise typer.BadParameter(f"Expected key=value, got '{item}'", param_hint="--set")
        key, value = item.split('=', 1)
        overrides[key.strip()] = yaml.safe_load(value) if value.strip() else ''
    return overrides


def load_task(task_file: Path, overrides: Optional[Dict[str, Any]] = None) -> Tuple[Dict, Dict, Dict]:
    """
    Load a YAML task file.

    Accepts ``{tool: {kind: nats, ...}}`` or a flat mapping with ``operation``.
    Returns (task_config, task_with, context).
    """
    if not task_file.exists():
        raise typer.BadParameter(f"Task file not found: {task_file}", param_hint="TASK_FILE")
    document = yaml.safe_load(task_file.read_text(encoding='utf-8')) or {}
    if not isinstance(document, dict):
        raise typer.BadParameter("Task file must contain a mapping", param_hint="TASK_FILE")

    tool = document.get('tool')
    if isinstance(tool, dict):
        kind = tool.get('kind', 'nats')
        if kind != 'nats':
            raise typer.BadParameter(f"Unsupported tool kind: {kind}", param_hint="TASK_FILE")
        task_config = dict(tool)
    else:
        task_config = {k: v for k, v in document.items() if k not in ('with', 'context', 'vars')}

    task_with = dict(document.get('with') or {})
    context = dict(document.get('context') or {})
    context['vars'] = {**(document.get('vars') or {}), **(context.get('vars') or {}), **(overrides or {})}
    return task_config, task_with, context


def _fail(error: Exception, operation: Optional[str] = None) -> None:
    _echo_json({'status': 'error', 'error': classify_nats_error(error, operation).to_dict()})
    raise typer.Exit(code=1)


@cli_app.command("run")
def run_task(
    task_file: Path = typer.Argument(..., help="YAML task file"),
    set_values: Optional[List[str]] = typer.Option(None, "--set", "-s", help="Context variable as key=value"),
    json_logs: bool = typer.Option(False, "--json-logs", help="Emit logs as JSON lines"),
):
    """Execute one NATS task and print its JSON result."""
    if json_logs:
        set_json_logs(True)
    task_config, task_with, context = load_task(task_file, parse_overrides(set_values))
    try:
        result = execute_nats_task(task_config, context, create_environment(), task_with=task_with)
    except Exception as e:
        _fail(e, task_config.get('operation') or task_with.get('operation'))
    _echo_json(result)


@cli_app.command("watch")
def watch(
    task_file: Path = typer.Argument(..., help="YAML task file describing the subscription"),
    set_values: Optional[List[str]] = typer.Option(None, "--set", "-s", help="Context variable as key=value"),
    json_logs: bool = typer.Option(False, "--json-logs", help="Emit logs as JSON lines"),
):
    """Consume a subject in real time and print each message as a JSON line. Ctrl-C stops."""
    if json_logs:
        set_json_logs(True)
    task_config, task_with, context = load_task(task_file, parse_overrides(set_values))
    try:
        trigger = RealtimeTrigger({**task_with, **task_config}, context, create_environment())
    except Exception as e:
        _fail(e, 'realtime')

    trigger.start(lambda record: _echo_json(record, indent=None))
    try:
        while not trigger.terminated:
            time.sleep(0.2)
    except KeyboardInterrupt:
        typer.echo("Stopping...", err=True)
        trigger.kill()

    if trigger.error is not None:
        _fail(trigger.error, 'realtime')


@cli_app.command("poll")
def poll(
    task_file: Path = typer.Argument(..., help="YAML task file describing the consume run"),
    interval: Optional[float] = typer.Option(None, "--interval", "-i", help="Seconds between evaluations"),
    once: bool = typer.Option(False, "--once", help="Evaluate a single time and exit"),
    set_values: Optional[List[str]] = typer.Option(None, "--set", "-s", help="Context variable as key=value"),
):
    """Evaluate a polling trigger periodically and print every non-empty result."""
    task_config, task_with, context = load_task(task_file, parse_overrides(set_values))
    trigger = PollingTrigger(task_config)
    period = interval if interval is not None else trigger.interval
    env = create_environment()

    try:
        while True:
            try:
                output = trigger.evaluate(context, env, task_with=task_with)
            except Exception as e:
                _fail(e, 'consume')
            if output is not None:
                _echo_json(output)
            if once:
                break
            time.sleep(period)
    except KeyboardInterrupt:
        typer.echo("Stopped.", err=True)


@cli_app.command("version")
def version():
    """Print the natspack version."""
    typer.echo(__version__)


app = cli_app

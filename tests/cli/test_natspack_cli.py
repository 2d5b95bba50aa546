import json

import nats.js.errors
import pytest
from typer.testing import CliRunner

from natspack import __version__
from natspack.cli import ctl
from natspack.core.errors import NotAMap

runner = CliRunner()


def _task_file(tmp_path, text):
    path = tmp_path / "task.yaml"
    path.write_text(text, encoding="utf-8")
    return path


def test_run_executes_tool_task_with_overrides(tmp_path, monkeypatch):
    calls = []

    def fake_execute(task_config, context, jinja_env, task_with=None):
        calls.append((task_config, context, task_with))
        return {'status': 'success', 'messages_count': 1}

    monkeypatch.setattr(ctl, "execute_nats_task", fake_execute)
    path = _task_file(tmp_path, """
tool:
  kind: nats
  operation: produce
  subject: "orders.{{ vars.region }}"
  from: hello
vars:
  region: us
""")

    result = runner.invoke(ctl.cli_app, ["run", str(path), "--set", "region=eu", "--set", "limit=5"])

    assert result.exit_code == 0, result.output
    assert json.loads(result.output) == {'status': 'success', 'messages_count': 1}
    task_config, context, task_with = calls[0]
    assert task_config['operation'] == "produce"
    assert context['vars'] == {'region': "eu", 'limit': 5}
    assert task_with == {}


def test_run_accepts_flat_task(tmp_path, monkeypatch):
    seen = {}

    def fake_execute(task_config, context, jinja_env, task_with=None):
        seen.update(task_config)
        return {'status': 'success'}

    monkeypatch.setattr(ctl, "execute_nats_task", fake_execute)
    path = _task_file(tmp_path, "operation: kv_get\nbucket: config\nkeys: [a]\n")

    result = runner.invoke(ctl.cli_app, ["run", str(path)])

    assert result.exit_code == 0, result.output
    assert seen == {'operation': "kv_get", 'bucket': "config", 'keys': ["a"]}


def test_run_reports_classified_error(tmp_path, monkeypatch):
    def fake_execute(*args, **kwargs):
        raise NotAMap("Message record at index 0 must be a map, got int", index=0)

    monkeypatch.setattr(ctl, "execute_nats_task", fake_execute)
    path = _task_file(tmp_path, "operation: produce\nsubject: s\nfrom: [1]\n")

    result = runner.invoke(ctl.cli_app, ["run", str(path)])

    assert result.exit_code == 1
    payload = json.loads(result.output)
    assert payload['status'] == 'error'
    assert payload['error']['code'] == "NATS_NOT_A_MAP"
    assert payload['error']['operation'] == "produce"


@pytest.mark.parametrize("error, code", [
    (nats.js.errors.BucketNotFoundError(), "NATS_NOT_FOUND"),
    (FileNotFoundError("Storage file not found: /tmp/nope.jsonl"), "NATS_SOURCE_NOT_FOUND"),
    (RuntimeError("odd"), "UNKNOWN"),
])
def test_run_reports_client_errors_as_error_info(tmp_path, monkeypatch, error, code):
    def fake_execute(*args, **kwargs):
        raise error

    monkeypatch.setattr(ctl, "execute_nats_task", fake_execute)
    path = _task_file(tmp_path, "operation: kv_get\nbucket: config\nkeys: [a]\n")

    result = runner.invoke(ctl.cli_app, ["run", str(path)])

    assert result.exit_code == 1
    payload = json.loads(result.output)
    assert payload['error']['code'] == code
    assert payload['error']['operation'] == "kv_get"


def test_poll_reports_client_errors_as_error_info(tmp_path, monkeypatch):
    class FailingTrigger:
        interval = 0.0

        def __init__(self, task_config):
            pass

        def evaluate(self, context, env, task_with=None):
            raise FileNotFoundError("Storage file not found")

    monkeypatch.setattr(ctl, "PollingTrigger", FailingTrigger)
    path = _task_file(tmp_path, "operation: consume\nsubject: s\n")

    result = runner.invoke(ctl.cli_app, ["poll", str(path), "--once"])

    assert result.exit_code == 1
    assert json.loads(result.output)['error']['code'] == "NATS_SOURCE_NOT_FOUND"


def test_run_rejects_other_tool_kinds(tmp_path):
    path = _task_file(tmp_path, "tool:\n  kind: http\n")

    result = runner.invoke(ctl.cli_app, ["run", str(path)])

    assert result.exit_code != 0


def test_run_rejects_bad_override(tmp_path):
    path = _task_file(tmp_path, "operation: produce\n")

    result = runner.invoke(ctl.cli_app, ["run", str(path), "--set", "novalue"])

    assert result.exit_code != 0


def test_poll_once_prints_non_empty_result(tmp_path, monkeypatch):
    class FakeTrigger:
        interval = 60.0

        def __init__(self, task_config):
            self.task_config = task_config

        def evaluate(self, context, jinja_env, task_with=None):
            return {'status': 'success', 'messages_count': 2, 'uri': "file:///tmp/r.jsonl"}

    monkeypatch.setattr(ctl, "PollingTrigger", FakeTrigger)
    path = _task_file(tmp_path, "subject: orders.>\nurl: nats://localhost:4222\n")

    result = runner.invoke(ctl.cli_app, ["poll", str(path), "--once"])

    assert result.exit_code == 0, result.output
    assert json.loads(result.output)['messages_count'] == 2


def test_poll_once_prints_nothing_when_empty(tmp_path, monkeypatch):
    class EmptyTrigger:
        interval = 60.0

        def __init__(self, task_config):
            pass

        def evaluate(self, context, jinja_env, task_with=None):
            return None

    monkeypatch.setattr(ctl, "PollingTrigger", EmptyTrigger)
    path = _task_file(tmp_path, "subject: orders.>\n")

    result = runner.invoke(ctl.cli_app, ["poll", str(path), "--once"])

    assert result.exit_code == 0
    assert result.output == ""


def test_watch_prints_each_record_as_json_line(tmp_path, monkeypatch):
    class FakeRealtime:
        def __init__(self, task_config, context, jinja_env):
            self.terminated = False
            self.error = None

        def start(self, emit):
            emit({'subject': "events.a", 'headers': {}, 'data': "1", 'timestamp': None})
            emit({'subject': "events.a", 'headers': {}, 'data': "2", 'timestamp': None})
            self.terminated = True

        def kill(self):
            return True

    monkeypatch.setattr(ctl, "RealtimeTrigger", FakeRealtime)
    path = _task_file(tmp_path, "subject: events.>\nurl: nats://localhost:4222\n")

    result = runner.invoke(ctl.cli_app, ["watch", str(path)])

    assert result.exit_code == 0, result.output
    lines = [json.loads(line) for line in result.output.splitlines()]
    assert [line['data'] for line in lines] == ["1", "2"]


def test_version():
    result = runner.invoke(ctl.cli_app, ["version"])

    assert result.output.strip() == __version__

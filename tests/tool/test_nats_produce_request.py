import json

import pytest
import nats.errors

from natspack.core.config import load_settings
from natspack.core.errors import EmptyInput, NotAMap
from natspack.tools.nats import produce as produce_module
from natspack.tools.nats.produce import execute_produce
from natspack.tools.nats.request import execute_request, request_timeout

from fake_nats import FakeNats


@pytest.fixture
def settings(tmp_path):
    return load_settings({'NATSPACK_STORAGE_DIR': str(tmp_path)})


@pytest.mark.asyncio
async def test_produce_publishes_every_record_and_flushes_once(settings):
    nc = FakeNats()
    records = [
        {'headers': {'trace': ["a", "b"]}, 'data': {'id': 1}},
        {'data': "plain"},
    ]

    output = await execute_produce(nc, {'subject': "orders.created", 'from': records}, settings)

    assert output['messages_count'] == 2
    assert nc.flushes == 1
    assert [m.subject for m in nc.published] == ["orders.created", "orders.created"]
    assert nc.published[0].data == b'{"id":1}'
    assert nc.published[0].headers == {'trace': "a, b"}
    assert nc.published[1].headers is None
    assert nc.published[1].data == b"plain"


@pytest.mark.asyncio
async def test_produce_streams_records_from_a_file(settings, tmp_path):
    path = tmp_path / "out.jsonl"
    path.write_text("\n".join(json.dumps({'data': f"r{i}"}) for i in range(3)), encoding="utf-8")
    nc = FakeNats()

    output = await execute_produce(nc, {'subject': "s", 'from': f"file://{path}"}, settings)

    assert output['messages_count'] == 3
    assert [m.data for m in nc.published] == [b"r0", b"r1", b"r2"]


@pytest.mark.asyncio
async def test_produce_rejects_empty_subject(settings):
    with pytest.raises(ValueError):
        await execute_produce(FakeNats(), {'subject': "  ", 'from': "x"}, settings)


@pytest.mark.asyncio
async def test_produce_rejects_empty_list_without_publishing(settings):
    nc = FakeNats()

    with pytest.raises(EmptyInput):
        await execute_produce(nc, {'subject': "s", 'from': []}, settings)

    assert nc.published == []


@pytest.mark.asyncio
async def test_produce_stops_at_first_malformed_record(settings):
    nc = FakeNats()

    with pytest.raises(NotAMap):
        await execute_produce(nc, {'subject': "s", 'from': [{'data': "ok"}, 5]}, settings)

    assert len(nc.published) == 1
    assert nc.flushes == 0


@pytest.mark.asyncio
async def test_request_returns_reply_payload(settings):
    nc = FakeNats(responder=lambda subject, data, headers: b"pong:" + data)

    output = await execute_request(nc, {'subject': "svc.ping", 'from': {'data': "ping"}}, settings)

    assert output['response'] == "pong:ping"
    assert nc.requests[0].timeout == settings.default_request_timeout


@pytest.mark.asyncio
async def test_request_without_responders_yields_none(settings):
    nc = FakeNats(responder=None)

    output = await execute_request(nc, {'subject': "svc.nobody", 'from': "ping"}, settings)

    assert output['status'] == 'success'
    assert output['response'] is None


@pytest.mark.asyncio
async def test_request_timeout_yields_none(settings):
    def slow(subject, data, headers):
        raise nats.errors.TimeoutError

    nc = FakeNats(responder=slow)

    output = await execute_request(
        nc, {'subject': "svc.slow", 'from': "ping", 'request_timeout': "250ms"}, settings
    )

    assert output['response'] is None
    assert nc.requests[0].timeout == 0.25


@pytest.mark.asyncio
async def test_request_uses_first_record_of_a_list(settings):
    nc = FakeNats(responder=lambda subject, data, headers: data)

    output = await execute_request(
        nc, {'subject': "svc.echo", 'from': [{'data': "one"}, {'data': "two"}]}, settings
    )

    assert len(nc.requests) == 1
    assert output['response'] == "one"


def test_request_timeout_parsing(settings):
    assert request_timeout({}, settings) == 5.0
    assert request_timeout({'request_timeout': "PT2S"}, settings) == 2.0
    assert request_timeout({'requestTimeout': 1}, settings) == 1.0
    with pytest.raises(ValueError):
        request_timeout({'request_timeout': 0}, settings)


@pytest.mark.asyncio
async def test_produce_logs_completion_at_success_level(settings, monkeypatch):
    messages = []
    monkeypatch.setattr(produce_module.logger, "success", lambda message, *a, **kw: messages.append(message))

    await execute_produce(FakeNats(), {'subject': "orders", 'from': "x"}, settings)

    assert messages == ["NATS: Published 1 messages to 'orders'"]

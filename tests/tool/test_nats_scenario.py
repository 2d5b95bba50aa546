import uuid
from contextlib import asynccontextmanager

import pytest

from natspack.core.config import load_settings
from natspack.core.render import create_environment
from natspack.core.storage import read_records
from natspack.tools.nats import executor as executor_module
from natspack.tools.nats.executor import execute_nats_task

from fake_nats import FakeJetStream, FakeMsg, FakeNats, FakePullSubscription


class LoopbackNats(FakeNats):
    """Published messages become available to the next pull subscription."""

    async def publish(self, subject, payload=b"", reply="", headers=None):
        await super().publish(subject, payload, reply=reply, headers=headers)
        self.js.subscription.queue.append(FakeMsg(subject, payload, headers=headers))


@pytest.fixture
def broker(monkeypatch):
    nc = LoopbackNats(js=FakeJetStream(FakePullSubscription()))

    @asynccontextmanager
    async def fake_connection(conn_params, settings):
        nc.closed = False
        try:
            yield nc
        finally:
            await nc.close()

    monkeypatch.setattr(executor_module, "nats_connection", fake_connection)
    return nc


def test_produce_then_consume_one_record(broker, tmp_path):
    settings = load_settings({'NATSPACK_STORAGE_DIR': str(tmp_path), 'NATS_URL': "nats://localhost:4222"})
    env = create_environment()
    subject = "scenario.S"

    produced = execute_nats_task(
        {'operation': "produce", 'subject': subject, 'from': {'headers': {'k': "v"}, 'data': "hello"}},
        {},
        env,
        settings=settings,
    )
    consumed = execute_nats_task(
        {
            'operation': "consume",
            'subject': subject,
            'durableId': f"scenario-{uuid.uuid4().hex[:8]}",
            'deliverPolicy': "All",
            'batchSize': 10,
            'pollDuration': "2s",
        },
        {},
        env,
        settings=settings,
    )

    assert produced['messages_count'] == 1
    assert consumed['messages_count'] == 1
    assert consumed['stop_reason'] == "exhausted"
    assert broker.closed

    records = list(read_records(consumed['uri']))
    assert len(records) == 1
    assert records[0]['subject'] == subject
    assert records[0]['headers'] == {'k': ["v"]}
    assert records[0]['data'] == "hello"
    assert records[0]['timestamp'] is not None
    assert broker.js.pull_calls[0].config.deliver_policy.value == "all"

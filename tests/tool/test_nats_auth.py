import os

import pytest
import nats.errors

from natspack.core.config import load_settings
from natspack.core.errors import NatsConnectionError
from natspack.tools.nats import connection as connection_module
from natspack.tools.nats.auth import get_nats_connection_params, resolve_nats_auth
from natspack.tools.nats.connection import build_connect_kwargs, nats_connection

from fake_nats import FakeNats


CREDS_CONTENT = """-----BEGIN NATS USER JWT-----
eyJ0eXAiOiJKV1QiLCJhbGciOiJlZDI1NTE5LW5rZXkifQ
------END NATS USER JWT------
"""


@pytest.fixture
def settings():
    return load_settings({'NATS_URL': "nats://env:4222", 'NATS_TOKEN': "env-token"})


def test_explicit_fields_win_over_auth_and_environment(settings):
    resolved = resolve_nats_auth(
        {'url': "nats://explicit:4222", 'auth': {'url': "nats://auth:4222", 'user': "svc", 'password': "pw"}},
        {},
        settings,
    )

    assert resolved['nats_url'] == "nats://explicit:4222"
    assert resolved['nats_user'] == "svc"
    assert resolved['nats_password'] == "pw"
    assert resolved['nats_token'] == "env-token"


def test_auth_reference_is_looked_up_in_context_credentials():
    context = {'credentials': {'nats_prod': {'data': {'server': "nats://prod:4222", 'token': "t0k"}}}}

    resolved = resolve_nats_auth({'auth': "nats_prod"}, context, load_settings({}))

    assert resolved == {'nats_url': "nats://prod:4222", 'nats_token': "t0k"}


def test_unknown_auth_reference_falls_back_to_environment(settings):
    resolved = resolve_nats_auth({'auth': "missing"}, {'credentials': {}}, settings)

    assert resolved['nats_url'] == "nats://env:4222"


def test_missing_url_is_rejected():
    with pytest.raises(ValueError):
        get_nats_connection_params(resolve_nats_auth({'subject': "a"}, {}, load_settings({})))


def test_connection_params_shape(settings):
    params = get_nats_connection_params({'nats_url': "nats://a:4222", 'nats_creds': "/etc/nats/app.creds"})

    assert params == {
        'url': "nats://a:4222",
        'user': None,
        'password': None,
        'token': None,
        'creds': "/etc/nats/app.creds",
    }


def test_connect_kwargs_prefer_user_password_over_token(settings):
    kwargs = build_connect_kwargs(
        {'url': "nats://a:4222,nats://b:4222", 'user': "u", 'password': "p", 'token': "t"}, settings
    )

    assert kwargs['servers'] == ["nats://a:4222", "nats://b:4222"]
    assert kwargs['user'] == "u" and kwargs['password'] == "p"
    assert 'token' not in kwargs
    assert kwargs['allow_reconnect'] is False
    assert kwargs['connect_timeout'] == 2.0


@pytest.mark.asyncio
async def test_connection_closes_client_and_removes_inline_creds(monkeypatch, settings):
    nc = FakeNats()
    seen = {}

    async def fake_connect(**kwargs):
        seen.update(kwargs)
        seen['creds_existed'] = os.path.exists(kwargs['user_credentials'])
        return nc

    monkeypatch.setattr(connection_module.nats, "connect", fake_connect)

    async with nats_connection({'url': "nats://a:4222", 'creds': CREDS_CONTENT}, settings) as client:
        assert client is nc

    assert nc.closed
    assert seen['creds_existed']
    assert not os.path.exists(seen['user_credentials'])


@pytest.mark.asyncio
async def test_connection_closes_client_when_body_fails(monkeypatch, settings):
    nc = FakeNats()

    async def fake_connect(**kwargs):
        return nc

    monkeypatch.setattr(connection_module.nats, "connect", fake_connect)

    with pytest.raises(RuntimeError):
        async with nats_connection({'url': "nats://a:4222"}, settings):
            raise RuntimeError("boom")

    assert nc.closed


@pytest.mark.asyncio
async def test_connect_failure_is_a_connection_error(monkeypatch, settings):
    async def fake_connect(**kwargs):
        raise nats.errors.NoServersError

    monkeypatch.setattr(connection_module.nats, "connect", fake_connect)

    with pytest.raises(NatsConnectionError) as exc_info:
        async with nats_connection({'url': "nats://down:4222"}, settings):
            pass

    assert exc_info.value.details['servers'] == ["nats://down:4222"]
    assert exc_info.value.to_error_info().kind.value == "connection"

import os
import sys
import tempfile
from typing import Optional, Dict
from pydantic import BaseModel, Field, ConfigDict, field_validator

from natspack.core.common import get_bool, parse_duration


def _load_env_file(path: str, allow_override: bool = False) -> None:
    """
    Minimal .env loader: loads KEY=VALUE pairs into os.environ.
    - Ignores empty lines and lines starting with '#'
    - Supports values wrapped in single or double quotes
    - By default, does not override existing environment variables
    """
    try:
        if not path or not os.path.exists(path):
            return
        with open(path, "r", encoding="utf-8") as f:
            for raw_line in f:
                line = raw_line.strip()
                if not line or line.startswith("#"):
                    continue
                if line.startswith("export "):
                    line = line[len("export "):].strip()
                if "=" not in line:
                    continue
                key, value = line.split("=", 1)
                key = key.strip()
                value = value.strip()
                if (value.startswith('"') and value.endswith('"')) or (value.startswith("'") and value.endswith("'")):
                    value = value[1:-1]
                if allow_override or key not in os.environ:
                    os.environ[key] = value
    except PermissionError as e:
        print(f"FATAL: Permission denied reading environment file {path}: {e}", file=sys.stderr)
        raise


def load_env_if_present() -> None:
    """
    Load environment variables from .env files in order of precedence:
    1. NATSPACK_ENV_FILE (when set, the only file read)
    2. .env.local
    3. .env.{ENVIRONMENT}
    4. .env.common
    5. .env
    Existing environment variables always win.
    """
    custom = os.environ.get("NATSPACK_ENV_FILE")
    if custom:
        _load_env_file(custom)
        return

    env_files = ['.env.local', '.env.common', '.env']
    environment = os.environ.get('ENVIRONMENT', '').strip()
    if environment:
        env_files.insert(1, f'.env.{environment}')

    for env_file in env_files:
        _load_env_file(env_file)


class Settings(BaseModel):
    """
    Defaults for NATS tasks, read from the environment.

    Built fresh for every task invocation by ``load_settings``; task fields
    always take precedence over these values.
    """
    model_config = ConfigDict(validate_assignment=True, populate_by_name=True)

    raw_env: Dict[str, str] = Field(default_factory=dict, exclude=True)

    # Connection fallbacks used when a task carries neither url nor auth
    nats_url: Optional[str] = Field(None, alias="NATS_URL")
    nats_user: Optional[str] = Field(None, alias="NATS_USER")
    nats_password: Optional[str] = Field(None, alias="NATS_PASSWORD")
    nats_token: Optional[str] = Field(None, alias="NATS_TOKEN")
    nats_creds: Optional[str] = Field(None, alias="NATS_CREDS")
    connect_timeout: float = Field(2.0, alias="NATSPACK_CONNECT_TIMEOUT")
    allow_reconnect: bool = Field(False, alias="NATSPACK_ALLOW_RECONNECT")

    # Consume defaults
    default_batch_size: int = Field(10, alias="NATSPACK_BATCH_SIZE")
    default_poll_duration: float = Field(2.0, alias="NATSPACK_POLL_DURATION")
    default_deliver_policy: str = Field("all", alias="NATSPACK_DELIVER_POLICY")
    realtime_fetch_timeout: float = Field(0.1, alias="NATSPACK_REALTIME_FETCH_TIMEOUT")
    trigger_interval: float = Field(60.0, alias="NATSPACK_TRIGGER_INTERVAL")

    # Request/reply
    default_request_timeout: float = Field(5.0, alias="NATSPACK_REQUEST_TIMEOUT")

    # Consume output files
    storage_dir: str = Field(
        default_factory=lambda: os.path.join(tempfile.gettempdir(), "natspack"),
        alias="NATSPACK_STORAGE_DIR",
    )

    @field_validator('nats_url', 'nats_user', 'nats_password', 'nats_token', 'nats_creds', mode='before')
    def blank_to_none(cls, v):
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @field_validator('allow_reconnect', mode='before')
    def coerce_bool(cls, v):
        return get_bool(v)

    @field_validator('default_batch_size', mode='before')
    def coerce_batch_size(cls, v):
        if isinstance(v, str):
            v = int(v.strip())
        if v < 1:
            raise ValueError("NATSPACK_BATCH_SIZE must be >= 1")
        return v

    @field_validator(
        'connect_timeout',
        'default_poll_duration',
        'realtime_fetch_timeout',
        'trigger_interval',
        'default_request_timeout',
        mode='before'
    )
    def coerce_duration(cls, v):
        seconds = parse_duration(v)
        if seconds is None or seconds < 0:
            raise ValueError(f"Invalid duration: {v!r}")
        return seconds

    @field_validator('default_deliver_policy', mode='before')
    def normalize_policy(cls, v):
        return str(v).strip()


def load_settings(env: Optional[Dict[str, str]] = None) -> Settings:
    """
    Build settings from the environment.

    Passing ``env`` skips .env loading and reads only the given mapping,
    which keeps tests independent from the process environment.
    """
    if env is None:
        load_env_if_present()
        env = dict(os.environ)

    known = {
        field.alias
        for field in Settings.model_fields.values()
        if field.alias and field.alias != "raw_env"
    }
    values = {key: value for key, value in env.items() if key in known}
    return Settings(raw_env=dict(env), **values)

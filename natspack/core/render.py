import re
import json
import base64
from typing import Any, Dict

from jinja2 import Environment, BaseLoader, Undefined

from natspack.core.common import DateTimeEncoder
from natspack.core.logger import setup_logger

logger = setup_logger(__name__, include_location=True)

_SIMPLE_PATH = re.compile(r'^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z0-9_]+)*$')


def _handle_undefined_values(value: Any) -> Any:
    """Convert Undefined values to None to prevent JSON serialization errors."""
    if isinstance(value, Undefined):
        return None
    elif isinstance(value, dict):
        return {k: _handle_undefined_values(v) for k, v in value.items()}
    elif isinstance(value, list):
        return [_handle_undefined_values(item) for item in value]
    return value


def _is_template(value: str) -> bool:
    return ('{{' in value and '}}' in value) or ('{%' in value and '%}' in value)


def add_filters(env: Environment) -> Environment:
    """
    Add the b64encode and tojson filters to a Jinja2 environment.

    Args:
        env: The Jinja2 environment

    Returns:
        The same environment, with filters registered
    """
    if 'b64encode' not in env.filters:
        env.filters['b64encode'] = lambda s: base64.b64encode(
            (s if isinstance(s, str) else str(s)).encode('utf-8')
        ).decode('utf-8')

    def tojson_filter(obj):
        if isinstance(obj, Undefined):
            return 'null'
        return json.dumps(obj, cls=DateTimeEncoder)

    env.filters['tojson'] = tojson_filter
    return env


def create_environment() -> Environment:
    return add_filters(Environment(loader=BaseLoader()))


def _lookup_path(context: Dict, var_path: str):
    value = context
    for part in var_path.split('.'):
        if isinstance(value, dict) and part in value:
            value = value[part]
        else:
            return False, None
    return True, value


def render_template(env: Environment, template: Any, context: Dict, strict_keys: bool = False) -> Any:
    """
    Jinja2 rendering for task fields.

    Strings without template markers are returned unchanged. A template that is
    exactly one variable path (``{{ outputs.produce.records }}``) resolves to the
    raw context object, so lists and maps survive rendering. Rendered output that
    looks like a JSON object or array is parsed back into Python values, unless
    the template explicitly asked for a ``tojson`` string. Dicts and lists are
    rendered recursively.

    Args:
        env: The Jinja2 environment
        template: The template to render
        context: The context to use for rendering
        strict_keys: Raise on rendering errors instead of returning the template

    Returns:
        The rendered value
    """
    if isinstance(template, dict):
        return {k: render_template(env, v, context, strict_keys=strict_keys) for k, v in template.items()}
    if isinstance(template, list):
        return [render_template(env, item, context, strict_keys=strict_keys) for item in template]
    if not isinstance(template, str) or not _is_template(template):
        return template

    env = add_filters(env)
    expr = template.strip()
    if expr.startswith('{{') and expr.endswith('}}') and expr.count('{{') == 1:
        var_path = expr[2:-2].strip()
        if _SIMPLE_PATH.match(var_path):
            found, value = _lookup_path(context, var_path)
            if found:
                return value

    try:
        rendered = env.from_string(template).render(**_handle_undefined_values(dict(context)))
    except Exception as e:
        msg = str(e)
        if "is undefined" in msg or "UndefinedError" in type(e).__name__:
            logger.debug(f"Template rendering error: {e}, template: {template}")
        else:
            logger.error(f"Template rendering error: {e}, template: {template}")
        if strict_keys:
            raise
        return template

    if '| tojson' in template or '|tojson' in template:
        return rendered

    stripped = rendered.strip()
    if (stripped.startswith('[') and stripped.endswith(']')) or \
            (stripped.startswith('{') and stripped.endswith('}')):
        try:
            return json.loads(stripped)
        except json.JSONDecodeError:
            pass

    return rendered

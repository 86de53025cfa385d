"""Parameter Resolver - template rendering against the execution context.

Node configuration strings may reference context values with Jinja2 syntax,
e.g. ``{{ webhook.raw.email }}`` or ``{{ httpResponse.data | json }}``.
The Handlebars-style ``{{json value}}`` helper form is accepted as well.
"""

import json
import re
from typing import Any, Mapping, Optional

from jinja2 import ChainableUndefined, TemplateError
from jinja2.sandbox import SandboxedEnvironment

from core.logging import get_logger

logger = get_logger(__name__)

JSON_HELPER_PATTERN = re.compile(r"\{\{\s*json\s+([^}|]+?)\s*\}\}")


def _finalize(value: Any) -> Any:
    # Objects render as JSON rather than Python reprs
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    return value


def _json_filter(value: Any, indent: Optional[int] = None) -> str:
    return json.dumps(value, default=str, indent=indent)


_env = SandboxedEnvironment(
    autoescape=False,
    undefined=ChainableUndefined,
    finalize=_finalize,
    keep_trailing_newline=True,
)
_env.filters["json"] = _json_filter


def render_template(template: Any, context: Mapping[str, Any]) -> Any:
    """Render `template` against `context`.

    Non-strings are returned unchanged. Missing variables render empty. Any
    template error falls back to the literal template string.
    """
    if not isinstance(template, str) or "{{" not in template and "{%" not in template:
        return template

    source = JSON_HELPER_PATTERN.sub(r"{{ \1 | json }}", template)
    try:
        return _env.from_string(source).render(dict(context))
    except TemplateError as e:
        logger.debug("Template render failed, using literal", error=str(e))
        return template
    except Exception as e:
        logger.debug("Template evaluation failed, using literal", error=str(e))
        return template


def resolve_path(context: Mapping[str, Any], path: str) -> Any:
    """Dotted-path lookup (``a.b.0.c``). Returns None when any segment is missing."""
    current: Any = context
    for part in path.split("."):
        if isinstance(current, Mapping) and part in current:
            current = current[part]
        elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            return None
    return current


def resolve_variable(reference: Any, context: Mapping[str, Any]) -> Any:
    """Resolve a data reference the way the spreadsheet export does.

    Tried in order: dotted context path, template render, then the literal.
    A string result that parses as JSON is returned parsed.
    """
    if not isinstance(reference, str):
        return reference

    stripped = reference.strip()
    inner = stripped[2:-2].strip() if stripped.startswith("{{") and stripped.endswith("}}") else stripped

    value = resolve_path(context, inner)
    if value is None:
        value = render_template(reference, context)

    if isinstance(value, str):
        try:
            return json.loads(value)
        except (json.JSONDecodeError, ValueError):
            return value
    return value

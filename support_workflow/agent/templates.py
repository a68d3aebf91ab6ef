"""Prompt-template rendering against the variable bag (Liquid syntax: ``{{ ticketModule }}``)."""
from typing import Any, Mapping, Optional

import structlog
from liquid import Environment
from liquid.exceptions import LiquidError

logger = structlog.get_logger(__name__)

DEFAULT_TRUNCATE_CHARS = 2000


def truncate_chars(value: Any, max_length: int = DEFAULT_TRUNCATE_CHARS) -> str:
    """Liquid filter: cut text to max_length characters, appending "..." when cut."""
    text = value if isinstance(value, str) else ("" if value is None else str(value))
    if len(text) <= max_length:
        return text
    return text[:max_length] + "..."


# Output is never HTML-escaped; prompts and handoff messages are plain text
env = Environment(autoescape=False)
env.filters["truncate_chars"] = truncate_chars


def render_template(template: Optional[str], variables: Mapping[str, Any]) -> str:
    """
    Render a template; an empty template renders as "".

    Rendering errors are logged and the raw template is returned.
    """
    if not template:
        return ""
    try:
        return env.from_string(template).render(**dict(variables))
    except LiquidError as e:
        logger.warning("template_render_failed", error=str(e))
        return template

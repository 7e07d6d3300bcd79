"""Email rendering utilities."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from jinja2 import Environment, FileSystemLoader, TemplateError, select_autoescape

logger = logging.getLogger(__name__)

TEMPLATE_DIR = Path(__file__).parent
TEMPLATES = {
    "opportunity": "opportunity.html",
    "digest": "digest.html",
}
ENV = Environment(
    loader=FileSystemLoader(str(TEMPLATE_DIR)),
    autoescape=select_autoescape(enabled_extensions=("html",)),
)
ENV.filters["money"] = lambda value: "-" if value is None else f"${value:,.2f}"
ENV.filters["percent"] = lambda value: "-" if value is None else f"{value:.1f}%"


class EmailRenderError(RuntimeError):
    pass


def render_email(kind: str, context: dict[str, Any]) -> tuple[str, str]:
    """Render the ``kind`` template. Returns ``(subject, html)``."""
    name = TEMPLATES.get(kind)
    if name is None:
        raise EmailRenderError(f"Unknown email kind {kind!r}")
    try:
        html = ENV.get_template(name).render(**context)
    except TemplateError as exc:
        logger.error("Rendering %s email failed: %s", kind, exc)
        raise EmailRenderError(str(exc)) from exc
    subject = context.get("subject", "Arbitrage Alert")
    return subject, html

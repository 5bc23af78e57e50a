"""Jinja2 environment for email-approval pages and notification emails."""

from __future__ import annotations

from pathlib import Path
from typing import Any

from jinja2 import Environment, FileSystemLoader, select_autoescape

from portal.core.config import settings

TEMPLATES_DIR = Path(__file__).resolve().parent.parent / "templates"


def format_request_number(number: int, prefix: str | None = None) -> str:
    """Human-readable request number, e.g. ``VRG-00042``."""
    width = settings.request_number_width
    return f"{prefix or settings.request_number_prefix}-{number:0{width}d}"


def _money_filter(value: Any, currency: str | None = None) -> str:
    if value is None:
        return "N/A"
    try:
        amount = float(value)
    except (TypeError, ValueError):
        return str(value)
    code = (currency or "USD").upper()
    symbol = "$" if code == "USD" else f"{code} "
    return f"{symbol}{amount:,.2f}"


def create_jinja_env() -> Environment:
    env = Environment(
        loader=FileSystemLoader(str(TEMPLATES_DIR)),
        autoescape=select_autoescape(["html"]),
        trim_blocks=True,
        lstrip_blocks=True,
    )
    env.filters["money"] = _money_filter
    env.filters["request_number"] = format_request_number
    return env


_env: Environment | None = None


def get_jinja_env() -> Environment:
    """Shared environment, built on first use."""
    global _env
    if _env is None:
        _env = create_jinja_env()
    return _env


def render_template(template_name: str, **context: Any) -> str:
    return get_jinja_env().get_template(template_name).render(**context)

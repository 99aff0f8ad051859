from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Any

from jinja2 import Environment, FileSystemLoader, StrictUndefined, select_autoescape

DEFAULT_TEMPLATE_DIR = Path(__file__).resolve().parents[1] / "templates"


def _format_ts(value: datetime | None) -> str:
    if value is None:
        return "-"
    return value.strftime("%Y-%m-%d %H:%M:%S")


class PageRenderer:
    """Renders the overview, login and admin pages."""

    def __init__(self, template_dir: str | Path | None = None) -> None:
        self.template_dir = Path(template_dir or DEFAULT_TEMPLATE_DIR)
        self._jinja = Environment(
            loader=FileSystemLoader(str(self.template_dir)),
            autoescape=select_autoescape(["html"]),
            trim_blocks=True,
            lstrip_blocks=True,
            undefined=StrictUndefined,
        )
        self._jinja.filters["ts"] = _format_ts

    def render(self, template_name: str, **context: Any) -> str:
        return self._jinja.get_template(template_name).render(**context)

    def overview(self, *, summary: dict[str, Any] | None, ip: str, city: str, colo: str, error: str = "") -> str:
        return self.render("overview.html", summary=summary, ip=ip, city=city, colo=colo, error=error)

    def login(self, *, error: str = "") -> str:
        return self.render("login.html", error=error)

    def admin(self, **context: Any) -> str:
        return self.render("admin.html", **context)

    def store_error(self, detail: str) -> str:
        return self.render("error.html", detail=detail)

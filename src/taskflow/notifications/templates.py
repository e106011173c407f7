"""Title/body templates for notification kinds and digests."""

from __future__ import annotations

import re
from pathlib import Path
from typing import Any

import yaml

from taskflow.notifications.models import NotificationTemplate

_PROJECT_ROOT = Path(__file__).resolve().parents[3]
_DEFAULT_TEMPLATES_PATH = _PROJECT_ROOT / "config" / "notification_templates.yml"

_PLACEHOLDER = re.compile(r"\{(\w+)\}")

_BUILTIN = {
    "digest": NotificationTemplate(
        id="digest", title="{count} pending notifications", body="{titles}"
    ),
}


class TemplateRenderer:
    """Loads templates from YAML and renders ``{key}`` placeholders."""

    def __init__(self, templates_path: str | Path | None = None) -> None:
        self._templates: dict[str, NotificationTemplate] = dict(_BUILTIN)
        path = Path(templates_path) if templates_path else _DEFAULT_TEMPLATES_PATH
        if not path.is_absolute() and not path.exists():
            path = _PROJECT_ROOT / path
        self._load(path)

    def _load(self, path: Path) -> None:
        if not path.exists():
            return
        with open(path) as fh:
            data = yaml.safe_load(fh) or {}
        for tmpl_id, tmpl_data in data.get("templates", {}).items():
            self._templates[tmpl_id] = NotificationTemplate(
                id=tmpl_id,
                title=tmpl_data.get("title", ""),
                body=tmpl_data.get("body", ""),
            )

    @property
    def templates(self) -> dict[str, NotificationTemplate]:
        return dict(self._templates)

    def has(self, template_id: str) -> bool:
        return template_id in self._templates

    def render(self, template_id: str, context: dict[str, Any]) -> tuple[str, str] | None:
        template = self._templates.get(template_id)
        if template is None:
            return None
        return self.substitute(template.title, context), self.substitute(template.body, context)

    @staticmethod
    def substitute(template_str: str, context: dict[str, Any]) -> str:
        """Single-pass ``{key}`` replacement; unknown placeholders are kept.

        Substituted values are never re-scanned, so a task title containing
        ``{something}`` is emitted verbatim.
        """
        values = {k: str(v) for k, v in context.items()}
        return _PLACEHOLDER.sub(lambda m: values.get(m.group(1), m.group(0)), template_str)

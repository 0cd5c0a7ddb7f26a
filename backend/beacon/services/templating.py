import logging
from typing import Any

from jinja2 import TemplateError
from jinja2.sandbox import SandboxedEnvironment
from markupsafe import escape

logger = logging.getLogger(__name__)


class TemplateRenderer:
    """Expands admin-authored email templates with per-recipient variables.

    Templates come from admins, not from developers, so they run in jinja's
    sandbox. Variable values are autoescaped.
    """

    def __init__(self, app_name: str):
        self.app_name = app_name
        self.env = SandboxedEnvironment(autoescape=True, trim_blocks=True, lstrip_blocks=True)
        self._compiled: dict[str, Any] = {}

    def variables(self, *, name: str | None, email: str | None, message: str, unsubscribe_url: str, notification_id: int) -> dict[str, Any]:
        return {
            "name": name or "",
            "email": email or "",
            "message": message,
            "unsubscribe_url": unsubscribe_url,
            "notification_id": notification_id,
            "app_name": self.app_name,
        }

    def render(self, template: str | None, variables: dict[str, Any]) -> str:
        """Render ``template``; without one, wrap the escaped message in a paragraph."""
        if not template:
            return self.plain(variables.get("message", ""))
        compiled = self._compiled.get(template)
        if compiled is None:
            compiled = self.env.from_string(template)
            if len(self._compiled) < 64:
                self._compiled[template] = compiled
        return compiled.render(**variables)

    @staticmethod
    def plain(message: str) -> str:
        return f"<p>{escape(message)}</p>"

    def check(self, template: str) -> str | None:
        """Return a syntax error message for ``template`` or None when it compiles."""
        try:
            self.env.parse(template)
        except TemplateError as e:
            logger.info("Rejected email template: %s", e)
            return str(e)
        return None

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any, Dict, Optional

from jinja2 import Environment, FileSystemLoader, StrictUndefined, TemplateError

from ..core.errors import StepFailed


def expand_env_vars(value: str) -> str:
    return re.sub(r"\$\{([^}^{]+)\}", lambda m: os.getenv(m.group(1), m.group(0)), value)


class TemplateRenderer:
    def __init__(self, templates_dir: Optional[Path] = None):
        loader = FileSystemLoader(str(templates_dir)) if templates_dir else None
        self.env = Environment(
            loader=loader,
            autoescape=False,
            undefined=StrictUndefined,
            keep_trailing_newline=True,
        )

    def render(self, template_name: str, context: Dict[str, Any]) -> str:
        if self.env.loader is None:
            raise StepFailed(f"template '{template_name}' requested but no templates_dir is configured")
        try:
            tmpl = self.env.get_template(template_name)
            return tmpl.render(**self._expand(context))
        except TemplateError as e:
            raise StepFailed(f"cannot render template '{template_name}': {e}") from e

    def render_string(self, source: str, context: Dict[str, Any]) -> str:
        try:
            return self.env.from_string(source).render(**self._expand(context))
        except TemplateError as e:
            raise StepFailed(f"cannot render inline template: {e}") from e

    @staticmethod
    def _expand(context: Dict[str, Any]) -> Dict[str, Any]:
        return {k: expand_env_vars(v) if isinstance(v, str) else v for k, v in context.items()}

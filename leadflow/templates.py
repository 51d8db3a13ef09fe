"""``{{variable}}`` substitution for email templates."""

from __future__ import annotations

import re
from typing import Mapping

from .contracts import EmailTemplate

_PLACEHOLDER = re.compile(r"\{\{\s*([\w.-]+)\s*\}\}")


def substitute(text: str, variables: Mapping[str, str]) -> str:
    """Replace each ``{{name}}`` in ``text``; unknown names become empty strings."""
    if not text:
        return ""
    return _PLACEHOLDER.sub(lambda m: str(variables.get(m.group(1), "")), text)


def render_template(template: EmailTemplate, variables: Mapping[str, str]) -> EmailTemplate:
    """Return a copy of ``template`` with subject and bodies rendered."""
    return template.model_copy(
        update={
            "subject": substitute(template.subject, variables),
            "html_body": substitute(template.html_body, variables),
            "text_body": substitute(template.text_body, variables),
        }
    )

"""Prompt rendering for the coordinator and investigator loops."""

from pathlib import Path
from typing import Any

from jinja2 import FileSystemLoader, StrictUndefined
from jinja2.sandbox import SandboxedEnvironment

# Template directory is package-internal, not user-controlled
TEMPLATE_DIR = Path(__file__).parent.parent / "prompts"
ALLOWED_TEMPLATES = {"coordinator.j2", "investigator.j2"}

_env = SandboxedEnvironment(
    loader=FileSystemLoader(TEMPLATE_DIR),
    undefined=StrictUndefined,
    autoescape=False,  # Not HTML
    trim_blocks=True,
    lstrip_blocks=True,
)


def render_prompt(template_name: str, **kwargs: Any) -> str:
    """Render a prompt template.

    StrictUndefined turns a missing variable into an error instead of an
    empty string in the prompt.
    """
    if template_name not in ALLOWED_TEMPLATES:
        raise ValueError(f"Unknown template '{template_name}'. Allowed: {sorted(ALLOWED_TEMPLATES)}")
    return _env.get_template(template_name).render(**kwargs)


def initial_task(
    error: str,
    context: str | None = None,
    language: str | None = None,
    file_path: str | None = None,
) -> str:
    """First user message of a coordinator conversation."""
    parts = [f"Error to debug:\n{error}"]
    if context:
        parts.append(f"Context:\n{context}")
    if language:
        parts.append(f"Language: {language}")
    if file_path:
        parts.append(f"File: {file_path}")
    return "\n\n".join(parts)

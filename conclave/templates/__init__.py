"""Document template loader.

Loads Jinja2 templates from the templates/ directory and renders them
with the given variables. Used by the exporters to build the phase
approval document.
"""

from __future__ import annotations

from pathlib import Path

from jinja2 import BaseLoader, Environment

# Directory containing the .j2 template files
_TEMPLATES_DIR = Path(__file__).parent


def render_template(template_name: str, **variables: object) -> str:
    """Load a template and render it with Jinja2 variables.

    Args:
        template_name: Template file name without the ``.j2`` suffix
                       (e.g. ``approval.md``).
        **variables: Template variables to inject.

    Returns:
        The rendered document.

    Raises:
        FileNotFoundError: If the template file does not exist.
    """
    path = _TEMPLATES_DIR / f"{template_name}.j2"
    if not path.exists():
        raise FileNotFoundError(f"Template not found: {path}")

    template_text = path.read_text(encoding="utf-8")

    # Default Undefined renders missing optional variables as empty
    env = Environment(loader=BaseLoader(), keep_trailing_newline=True)
    template = env.from_string(template_text)
    return template.render(**variables)

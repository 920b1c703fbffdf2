"""Template rendering with envsubst-style ``${NAME}`` placeholders.

Templates are jinja2 templates whose variable delimiters are ``${`` and
``}``, so bare ``$`` text (nginx variables, fail2ban interpolation) passes
through untouched. Literal ``${...}`` text that belongs to the target file,
such as apt's ``${distro_id}``, sits inside a ``{% raw %}`` block.

Rendering fails closed: every placeholder a template uses must be one of its
declared required variables, and every required variable must be set and
non-empty, before anything is rendered.
"""

from pathlib import Path
from typing import Iterable, List, Mapping

from jinja2 import Environment, StrictUndefined, TemplateSyntaxError, UndefinedError, meta

from server_hardener.exceptions import MissingVariableError, TemplateError, TemplateNotFoundError

_environment = Environment(
    autoescape=False,
    undefined=StrictUndefined,
    keep_trailing_newline=True,
    trim_blocks=False,
    lstrip_blocks=False,
    variable_start_string="${",
    variable_end_string="}",
)


def _missing(names: Iterable[str], variables: Mapping[str, str]) -> List[str]:
    return [name for name in names if not str(variables.get(name, "") or "")]


def render_text(
    text: str,
    variables: Mapping[str, str],
    required: Iterable[str],
    template: str = "<inline>",
) -> str:
    """Substitute the required variables into ``text``.

    Raises:
        MissingVariableError: If a required variable is unset or empty, or the
            text uses a placeholder it does not declare
        TemplateError: If the text is not a valid template
    """
    names = tuple(required)
    missing = _missing(names, variables)
    if missing:
        raise MissingVariableError(template, missing)

    try:
        parsed = _environment.parse(text)
    except TemplateSyntaxError as e:
        raise TemplateError(f"Invalid template {template}: {e}") from e

    undeclared = sorted(meta.find_undeclared_variables(parsed) - set(names))
    if undeclared:
        raise MissingVariableError(template, undeclared)

    context = {name: str(variables[name]) for name in names}
    try:
        return _environment.from_string(text).render(context)
    except UndefinedError as e:
        raise TemplateError(f"Cannot render {template}: {e}") from e


class TemplateRenderer:
    """Render templates from the catalog directory."""

    def __init__(self, templates_dir: Path) -> None:
        self.templates_dir = templates_dir

    def path_for(self, template: str) -> Path:
        return self.templates_dir / template

    def render(
        self, template: str, variables: Mapping[str, str], required: Iterable[str] = ()
    ) -> bytes:
        """Render a catalog template to bytes.

        Args:
            template: Path of the template relative to the catalog
            variables: Available variable values
            required: Names the template declares as required

        Returns:
            Rendered content

        Raises:
            MissingVariableError: If a required variable is absent
            TemplateNotFoundError: If the template cannot be read
        """
        names = tuple(required)
        # Fail before touching the template so no partial output can exist
        missing = _missing(names, variables)
        if missing:
            raise MissingVariableError(template, missing)

        path = self.path_for(template)
        try:
            text = path.read_text(encoding="utf-8")
        except OSError as e:
            raise TemplateNotFoundError(f"Cannot read template {path}: {e}") from e

        return render_text(text, variables, names, template=template).encode("utf-8")

"""Prompt assembly and template rendering.

This module turns a template body plus an evaluation context into prompt text.
It knows how `--pre`, `--post`, and free-form extra text are placed around the
rendered body, but performs no option parsing, token budgeting, or model
invocation.

Design constraints:
    - Deterministic rendering for identical template and context.
    - Prepend/append/extra text is inserted literally; only the template body
      and system text are evaluated as Jinja2.
    - Undefined variables are errors (`StrictUndefined`), never empty strings.

Extra text placement:
    When the template body references `extra`, the joined extra text is bound
    as the `extra` context value and placed wherever the template puts it.
    Otherwise it is appended after the rendered body. In both cases the text
    lives in the context under `extra`, so the context budgeter can shorten it
    and re-render.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Optional

import jinja2
from jinja2 import meta

from promptbox.core.errors import RenderFailure


EXTRA_KEY = "extra"
SECTION_SEPARATOR = "\n\n"


def create_jinja_env() -> jinja2.Environment:
    """Create the Jinja2 environment used for all prompt rendering."""
    return jinja2.Environment(
        undefined=jinja2.StrictUndefined,
        autoescape=False,
        trim_blocks=True,
        lstrip_blocks=True,
        keep_trailing_newline=True,
    )


JINJA_ENV = create_jinja_env()


def compile_template(name: str, source: str) -> jinja2.Template:
    try:
        return JINJA_ENV.from_string(source)
    except jinja2.TemplateSyntaxError as exc:
        raise RenderFailure(name, f"{exc.message} (line {exc.lineno})") from exc


def render_template(name: str, source: str, context: Mapping[str, Any]) -> str:
    """Render a template string with `context`.

    Raises:
        RenderFailure: Syntax errors, undefined variables, or filter failures.
    """
    return _render(name, compile_template(name, source), context)


def _render(name: str, template: jinja2.Template, context: Mapping[str, Any]) -> str:
    try:
        return template.render(dict(context))
    except jinja2.TemplateError as exc:
        raise RenderFailure(name, str(exc)) from exc


def template_references_extra(name: str, source: str) -> bool:
    """Return whether the template body uses the `extra` binding."""
    try:
        parsed = JINJA_ENV.parse(source)
    except jinja2.TemplateSyntaxError as exc:
        raise RenderFailure(name, f"{exc.message} (line {exc.lineno})") from exc
    return EXTRA_KEY in meta.find_undeclared_variables(parsed)


@dataclass
class PromptAssembly:
    """A compiled template body and the literal text placed around it.

    `render(context)` is called once for the initial prompt and again by the
    context budgeter each time it shortens a free-form context value.
    """

    name: str
    body: jinja2.Template
    prepend: Optional[str] = None
    append: Optional[str] = None
    extra_in_template: bool = False

    @classmethod
    def build(
        cls,
        name: str,
        source: str,
        prepend: Optional[str] = None,
        append: Optional[str] = None,
    ) -> "PromptAssembly":
        return cls(
            name=name,
            body=compile_template(name, source),
            prepend=prepend,
            append=append,
            extra_in_template=template_references_extra(name, source),
        )

    def render(self, context: Mapping[str, Any]) -> str:
        parts = []
        if self.prepend:
            parts.append(self.prepend)

        parts.append(_render(self.name, self.body, context))

        if not self.extra_in_template:
            extra = context.get(EXTRA_KEY)
            if extra:
                parts.append(extra)

        if self.append:
            parts.append(self.append)

        return SECTION_SEPARATOR.join(parts)

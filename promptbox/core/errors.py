"""Error taxonomy shared by every promptbox layer.

Architectural role:
    Defines the closed set of failures a single `run` invocation can end with.
    Argument binding, template loading, rendering, context budgeting, and backend
    dispatch all raise subclasses of `PromptboxError`, so the CLI adapter can map
    any failure to one stderr line and a non-zero exit status.

Failure handling model:
    None of these errors are retried. Each carries the originating detail
    (option name, path, token counts, or backend status/body) as attributes and
    in its message. Lower-level exceptions are chained with `raise ... from`.

Backend errors:
    Transport, HTTP-status, decode, and model-reported failures from any adapter
    collapse into the three `BackendError` subclasses below.
"""

from __future__ import annotations

from typing import Optional, Sequence


class PromptboxError(Exception):
    """Base class for all errors surfaced by a promptbox invocation."""


# =========================================================
# ARGUMENT BINDING
# =========================================================

class MissingRequiredOption(PromptboxError):
    """A mandatory template option received no value."""

    def __init__(self, option: str) -> None:
        self.option = option
        super().__init__(f"Missing required option --{option}")


class ArgumentParseFailure(PromptboxError):
    """The token stream could not be parsed or a value failed type coercion."""

    def __init__(self, message: str, option: Optional[str] = None) -> None:
        self.option = option
        self.message = message
        if option:
            super().__init__(f"Failed to parse arguments: --{option}: {message}")
        else:
            super().__init__(f"Failed to parse arguments: {message}")


class IoFailure(PromptboxError):
    """A file or image named on the command line could not be read."""

    def __init__(self, path: str, cause: str) -> None:
        self.path = path
        self.cause = cause
        super().__init__(f"Failed reading input {path}: {cause}")


# =========================================================
# CONFIGURATION AND TEMPLATES
# =========================================================

class ConfigParseFailure(PromptboxError):
    def __init__(self, path: str, message: str) -> None:
        self.path = path
        super().__init__(f"Error reading configuration file {path}: {message}")


class TemplateNotFound(PromptboxError):
    def __init__(self, name: str, searched: Sequence[str] = ()) -> None:
        self.name = name
        self.searched = list(searched)
        super().__init__(f"Template not found: {name}")


class TemplateParseFailure(PromptboxError):
    def __init__(self, path: str, message: str) -> None:
        self.path = path
        super().__init__(f"Error reading template {path}: {message}")


class EmptyTemplate(PromptboxError):
    """The template declares neither an inline body nor a body file."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Template {name} is missing template and template_path")


class RenderFailure(PromptboxError):
    def __init__(self, template: str, message: str) -> None:
        self.template = template
        super().__init__(f"Failed to render {template}: {message}")


# =========================================================
# CONTEXT BUDGET
# =========================================================

class ContextLimitExceeded(PromptboxError):
    """The prompt cannot be brought within the model's token budget."""

    def __init__(self, required: int, available: int) -> None:
        self.required = required
        self.available = available
        super().__init__(
            f"Prompt needs {required} tokens but only {available} are available"
        )


# =========================================================
# BACKEND DISPATCH
# =========================================================

class BackendError(PromptboxError):
    """Base class for failures while talking to a model backend."""

    def __init__(self, provider: str, message: str) -> None:
        self.provider = provider
        super().__init__(f"{provider}: {message}")


class BackendTransportFailure(BackendError):
    """The backend could not be reached or the connection broke mid-stream."""


class BackendProtocolFailure(BackendError):
    """The backend sent a response chunk that could not be decoded."""


class BackendModelFailure(BackendError):
    """The backend or the model itself reported an error.

    `status` is the HTTP status when the error came from a non-success
    response, and `body` holds the response text verbatim.
    """

    def __init__(
        self,
        provider: str,
        message: str,
        status: Optional[int] = None,
        body: str = "",
    ) -> None:
        self.status = status
        self.body = body
        detail = message
        if status is not None:
            detail = f"HTTP {status}: {message}"
        if body and body not in detail:
            detail = f"{detail}\n{body}"
        super().__init__(provider, detail)

"""
Command-line adapter for promptbox.

Architectural role:
- Exposes the `promptbox` console command.
- Detects `promptbox run <template> ...` and hands the raw tokens to the core
  run pipeline, which parses them against the template's own option schema.
- Delegates all prompt generation and model dispatch to
  `promptbox.core.engine.run_template`.

Request lifecycle (per invocation):
1. Load `.env` into the process environment.
2. Configure logging (`--verbose` lowers the level to INFO).
3. Read piped stdin when stdin is not a terminal.
4. Run the template, streaming the answer to stdout.

Input validation behavior:
- `run` followed directly by a template name skips the top-level parser, so
  template options never collide with it.
- Any other command line goes through the top-level parser, which prints help
  and usage.

Error handling strategy:
- `PromptboxError` is printed as one `Error: ...` line on stderr with exit
  status 1.
- Keyboard interrupts exit with status 130 without a traceback.

Side effects:
- Reads stdin and `.env`; writes model output to stdout and diagnostics to
  stderr.
"""

import argparse
import logging
import sys
from pathlib import Path
from typing import Optional, Sequence

from dotenv import load_dotenv

from promptbox import __version__
from promptbox.api.args import add_global_run_arguments
from promptbox.core.engine import run_template
from promptbox.core.errors import PromptboxError


logger = logging.getLogger(__name__)

LOG_FORMAT = "%(levelname)s %(name)s: %(message)s"
_VERBOSE_FLAGS = ("-v", "--verbose")


# =========================================================
# HELPERS
# =========================================================

def build_parser() -> argparse.ArgumentParser:
    """Top-level parser used for help output and flag-first `run` invocations."""
    parser = argparse.ArgumentParser(
        prog="promptbox",
        description="Run prompt templates against Ollama, LM Studio, or OpenAI",
        allow_abbrev=False,
    )
    parser.add_argument("--version", action="version", version=f"promptbox {__version__}")

    commands = parser.add_subparsers(dest="command")
    run = commands.add_parser(
        "run",
        help="Run a template",
        description="Run a template. Template options are listed by `promptbox run <template> --help`.",
        allow_abbrev=False,
    )
    add_global_run_arguments(run)
    return parser


def read_stdin() -> Optional[str]:
    """Return piped stdin text, or None when stdin is a terminal."""
    stdin = sys.stdin
    if stdin is None or stdin.isatty():
        return None
    return stdin.read()


def configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format=LOG_FORMAT,
        stream=sys.stderr,
    )


def _find_run_template(argv: Sequence[str]) -> Optional[str]:
    if len(argv) >= 2 and argv[0] == "run" and argv[1] and not argv[1].startswith("-"):
        return argv[1]
    return None


# =========================================================
# MAIN
# =========================================================

def main(argv: Optional[Sequence[str]] = None) -> int:
    """
    Run the promptbox command line.

    Args:
        argv: Tokens after the program name. Defaults to `sys.argv[1:]`.

    Returns:
        Process exit status.
    """
    argv = list(sys.argv[1:] if argv is None else argv)
    load_dotenv()

    template = _find_run_template(argv)
    if template is None:
        # Flags before the template name, or not a run at all.
        parsed, _ = build_parser().parse_known_args(argv)
        if parsed.command != "run":
            build_parser().print_help(sys.stderr)
            return 1
        template = parsed.template

    configure_logging(any(token in _VERBOSE_FLAGS for token in argv))

    try:
        run_template(Path.cwd(), template, argv[1:], read_stdin())
    except PromptboxError as exc:
        logger.debug("Run failed", exc_info=True)
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 130

    return 0


if __name__ == "__main__":
    sys.exit(main())

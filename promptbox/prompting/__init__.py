"""Prompting package.

This package contains the deterministic prompt-construction pieces used by the
run pipeline: template schema and loading (`templates`), Jinja2 rendering and
prompt assembly (`prompt_builder`), token counting (`token_estimator`), and
context-budget enforcement (`context_budget`). It does not parse command lines
or invoke models.
"""

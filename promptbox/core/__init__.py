"""Core orchestration package.

Architectural role:
    Exposes the run pipeline that sits between the CLI entrypoint and the
    lower-level subsystems (argument binding, prompting, context budgeting, and
    LLM backends).

Composition:
    - `engine`: Run pipeline from template lookup to streamed output.
    - `config`: Configuration discovery and template lookup.
    - `errors`: Error taxonomy shared by every layer.

Determinism and side effects:
    Package import itself is deterministic and side-effect free. Runtime side effects
    are performed by `engine` during a run.
"""

"""promptbox command-line adapter package.

Architectural role:
- Defines the external interaction boundary: the `promptbox` console command.
- Binds command-line tokens to a template's option schema (`args`).
- Delegates prompt generation and dispatch to the core layer.

Scope:
- Argument parsing, stdin capture, and exit-status mapping only.
- No template rendering or model invocation is implemented in this package root.
"""

"""Attachment loading package for CLI adapters.

Architectural role:
- Reads File and Image option values from disk at argument-binding time.
- Produces context objects for files and backend payloads for images.
"""

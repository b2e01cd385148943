"""
File and image attachment loading for template options.

Architectural role:
- Turn File-typed option values into `{filename, path, contents}` objects that
  are placed in the evaluation context.
- Turn Image-typed option values into `ImageData` payloads that travel to the
  backend beside the prompt.

Processing lifecycle:
1. Join the caller-supplied path onto the base directory.
2. Canonicalize the joined path (symlinks resolved, file must exist).
3. Read the full contents once.
4. For images, decode headers with Pillow to record format and dimensions.

Error handling strategy:
- Any canonicalization, read, or decode failure raises `IoFailure` naming the
  path as the caller wrote it. Nothing is deferred or skipped.

Side effects:
- Filesystem reads only.
"""

import base64
import io
import os
from dataclasses import dataclass
from typing import Dict

from PIL import Image, UnidentifiedImageError

from promptbox.core.errors import IoFailure


# ============================================================
# PATH RESOLUTION
# ============================================================

def resolve_path(base_dir: str, path: str) -> str:
    """
    Canonicalize `path` against `base_dir`.

    Absolute paths are used as given. The result must name an existing file.
    """
    joined = os.path.join(base_dir, os.path.expanduser(path))
    resolved = os.path.realpath(joined)

    if not os.path.exists(resolved):
        raise IoFailure(path, "No such file or directory")
    if os.path.isdir(resolved):
        raise IoFailure(path, "Is a directory")

    return resolved


# ============================================================
# FILE OPTIONS
# ============================================================

def create_file_object(base_dir: str, path: str) -> Dict[str, str]:
    """
    Read a File option value into its evaluation-context object.

    `filename` is the final path component and `path` is the value exactly as
    supplied, so templates can show what the user typed.
    """
    resolved = resolve_path(base_dir, path)

    try:
        with open(resolved, "r", encoding="utf-8") as f:
            contents = f.read()
    except (OSError, UnicodeDecodeError) as exc:
        raise IoFailure(path, f"Could not read file: {exc}") from exc

    return {
        "filename": os.path.basename(os.path.normpath(path)),
        "path": path,
        "contents": contents,
    }


# ============================================================
# IMAGE OPTIONS
# ============================================================

@dataclass(frozen=True)
class ImageData:
    """Raw image bytes plus the metadata a multimodal request needs."""

    path: str
    data: bytes
    format: str
    width: int
    height: int

    @property
    def mime_type(self) -> str:
        if self.format not in Image.MIME:
            # Format plugins register their MIME types on first load.
            Image.init()
        return Image.MIME.get(self.format, "application/octet-stream")

    def base64(self) -> str:
        return base64.b64encode(self.data).decode("ascii")

    def data_url(self) -> str:
        return f"data:{self.mime_type};base64,{self.base64()}"


def read_image(base_dir: str, path: str) -> ImageData:
    """Read and identify an Image option value."""
    resolved = resolve_path(base_dir, path)

    try:
        with open(resolved, "rb") as f:
            data = f.read()
    except OSError as exc:
        raise IoFailure(path, f"Could not read image: {exc}") from exc

    try:
        with Image.open(io.BytesIO(data)) as img:
            image_format = img.format or ""
            width, height = img.size
    except (UnidentifiedImageError, OSError) as exc:
        raise IoFailure(path, f"Not a readable image: {exc}") from exc

    return ImageData(
        path=resolved,
        data=data,
        format=image_format,
        width=width,
        height=height,
    )

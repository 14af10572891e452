"""File attachments: type detection, lazy reading and request serialization."""

from __future__ import annotations

import asyncio
import base64
import io
import logging
import mimetypes
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any

from PIL import Image
from pydantic import BaseModel, ConfigDict, PrivateAttr

from .config import JPEG_QUALITY, MAX_IMAGE_DIMENSION

if TYPE_CHECKING:
    from .models import Message

logger = logging.getLogger(__name__)

GENERIC_MIME = "application/octet-stream"

FILE_BLOCK = "\n\n--- File: {name} ---\n{content}\n--- End file ---"
UNPROCESSED_NOTE = "\n\n[Attached files not processed: {names}]"

# Source files that mimetypes either misses or reports as something generic
_EXTENSION_MIME = {
    ".dart": "text/x-dart",
    ".py": "text/x-python",
    ".js": "text/javascript",
    ".ts": "text/typescript",
    ".jsx": "text/jsx",
    ".tsx": "text/tsx",
    ".java": "text/x-java-source",
    ".cpp": "text/x-c++src",
    ".cc": "text/x-c++src",
    ".cxx": "text/x-c++src",
    ".c": "text/x-csrc",
    ".h": "text/x-chdr",
    ".cs": "text/x-csharp",
    ".go": "text/x-go",
    ".rs": "text/x-rust",
    ".php": "text/x-php",
    ".rb": "text/x-ruby",
    ".swift": "text/x-swift",
    ".kt": "text/x-kotlin",
    ".scala": "text/x-scala",
    ".sh": "text/x-shellscript",
    ".bash": "text/x-shellscript",
    ".zsh": "text/x-zsh",
    ".fish": "text/x-fish",
    ".ps1": "text/x-powershell",
    ".sql": "text/x-sql",
    ".html": "text/html",
    ".htm": "text/html",
    ".css": "text/css",
    ".scss": "text/x-scss",
    ".sass": "text/x-sass",
    ".less": "text/x-less",
    ".yaml": "text/x-yaml",
    ".yml": "text/x-yaml",
    ".toml": "text/x-toml",
    ".ini": "text/x-ini",
    ".cfg": "text/plain",
    ".conf": "text/plain",
    ".json": "application/json",
    ".xml": "text/xml",
    ".md": "text/markdown",
    ".markdown": "text/markdown",
    ".txt": "text/plain",
    ".log": "text/plain",
}

_TEXT_MIME_MARKERS = (
    "application/json",
    "application/javascript",
    "application/xml",
    "application/x-yaml",
    "application/x-toml",
    "application/x-sh",
    "application/x-python",
    "application/x-ruby",
    "application/x-perl",
    "application/x-php",
    "application/x-java-source",
    "application/x-csharp",
    "application/x-go",
    "application/x-rust",
    "application/x-kotlin",
    "application/x-scala",
    "application/x-swift",
    "application/xhtml+xml",
)

_TEXT_FILE_NAMES = frozenset(
    {
        "dockerfile", "makefile", "procfile", "rakefile", "gemfile", "capfile",
        "todo", "readme", "license", "authors", "contributing", "changelog",
        "version", "manifest", "vagrantfile", "rvmrc", "podfile", "cartfile",
        "requirements", "pipfile", "bzrignore", "hgignore", "cvsignore",
        "gitkeep", "gitmodules", "mailmap", "desc", "keywords",
    }
)

_TEXT_EXTENSIONS = tuple(_EXTENSION_MIME) + (
    ".hpp", ".psm1", ".psd1", ".gitignore", ".gitattributes", ".env",
    ".dockerignore", ".editorconfig", ".eslintrc", ".prettierrc", ".babelrc",
    ".yarnrc", ".lock",
)


class AttachmentKind(str, Enum):
    IMAGE = "image"
    DOCUMENT = "document"
    OTHER = "other"


def guess_mime_type(path: str) -> str:
    """MIME type from the filename, refined by the extension table when generic."""
    mime, _ = mimetypes.guess_type(path)
    if not mime or mime == GENERIC_MIME:
        mime = _EXTENSION_MIME.get(Path(path).suffix.lower(), GENERIC_MIME)
    return mime


def kind_for_mime(mime_type: str) -> AttachmentKind:
    if mime_type.startswith("image/"):
        return AttachmentKind.IMAGE
    if (
        mime_type.startswith("text/")
        or mime_type == "application/pdf"
        or "document" in mime_type
        or "sheet" in mime_type
    ):
        return AttachmentKind.DOCUMENT
    return AttachmentKind.OTHER


def _has_no_extension(name: str) -> bool:
    return "." not in name or name.startswith(".")


class Attachment(BaseModel):
    """A file attached to a message.

    File contents are not touched when the attachment is created; text and
    image data are read on first serialization and cached on the instance.
    """

    model_config = ConfigDict(frozen=True)

    source_path: str
    display_name: str
    mime_type: str = GENERIC_MIME
    size_bytes: int = 0
    kind: AttachmentKind = AttachmentKind.OTHER

    _text: str | None = PrivateAttr(default=None)
    _image: tuple[str, str] | None = PrivateAttr(default=None)

    @classmethod
    def from_path(cls, path: str | Path, mime_type: str | None = None) -> Attachment:
        p = Path(path)
        if not mime_type or mime_type == GENERIC_MIME:
            mime_type = guess_mime_type(str(p))
        try:
            size = p.stat().st_size
        except OSError:
            size = 0
        return cls(
            source_path=str(p),
            display_name=p.name,
            mime_type=mime_type,
            size_bytes=size,
            kind=kind_for_mime(mime_type),
        )

    @property
    def is_image(self) -> bool:
        return self.kind is AttachmentKind.IMAGE

    @property
    def is_text_like(self) -> bool:
        """Whether the file should be inlined into the prompt as text."""
        if self.is_image:
            return False
        if self.mime_type.startswith("text/"):
            return True

        name = self.display_name.lower()
        if self.mime_type == GENERIC_MIME and _has_no_extension(name):
            return True
        if any(marker in self.mime_type for marker in _TEXT_MIME_MARKERS):
            return True
        if _has_no_extension(name) and name.lstrip(".") in _TEXT_FILE_NAMES:
            return True
        return name.endswith(_TEXT_EXTENSIONS)

    async def read_text(self) -> str:
        """Decoded file text, or a bracketed placeholder describing the failure."""
        if self._text is not None:
            return self._text

        path = Path(self.source_path)
        try:
            data = await asyncio.to_thread(path.read_bytes)
        except FileNotFoundError:
            return f"[Error: file not found: {self.source_path}]"
        except OSError as e:
            logger.warning("Failed to read attachment %s: %s", self.source_path, e)
            return f"[Error reading file {self.display_name}: {e}]"

        try:
            text = data.decode("utf-8")
        except UnicodeDecodeError:
            try:
                text = data.decode("latin-1")
            except UnicodeDecodeError as e:
                return f"[Could not decode file {self.display_name}: {e}]"

        if not text.strip():
            return f"[File is empty: {self.display_name}]"

        self._text = text
        return text

    async def read_image_data(self) -> tuple[str, str]:
        """Return ``(mime_type, base64_data)`` for an image, downscaled if large.

        Raises OSError when the file cannot be read.
        """
        if self._image is None:
            data = await asyncio.to_thread(Path(self.source_path).read_bytes)
            self._image = await asyncio.to_thread(_encode_image, data, self.mime_type)
        return self._image

    async def data_url(self) -> str:
        mime, encoded = await self.read_image_data()
        return f"data:{mime};base64,{encoded}"


def _encode_image(data: bytes, mime_type: str) -> tuple[str, str]:
    """Downscale so the larger side is at most MAX_IMAGE_DIMENSION, re-encoding as JPEG."""
    try:
        with Image.open(io.BytesIO(data)) as im:
            width, height = im.size
            if max(width, height) <= MAX_IMAGE_DIMENSION:
                return mime_type, base64.b64encode(data).decode("ascii")

            if width >= height:
                size = (MAX_IMAGE_DIMENSION, max(1, round(height * MAX_IMAGE_DIMENSION / width)))
            else:
                size = (max(1, round(width * MAX_IMAGE_DIMENSION / height)), MAX_IMAGE_DIMENSION)

            resized = im.convert("RGB").resize(size, Image.Resampling.BILINEAR)
            out = io.BytesIO()
            resized.save(out, format="JPEG", quality=JPEG_QUALITY)
    except (OSError, ValueError) as e:
        # Not decodable by Pillow; send the original bytes untouched
        logger.debug("Image downscale skipped: %s", e)
        return mime_type, base64.b64encode(data).decode("ascii")

    return "image/jpeg", base64.b64encode(out.getvalue()).decode("ascii")


async def serialize_message(message: Message) -> dict[str, Any]:
    """Build the provider payload fragment for one message.

    Text-like attachments are inlined into the text. Images turn the content
    into a list of blocks; without images the content stays a plain string.
    """
    text = message.text
    image_blocks: list[dict[str, Any]] = []
    unprocessed: list[str] = []

    for att in message.attachments:
        if att.is_image:
            try:
                url = await att.data_url()
            except OSError as e:
                logger.warning("Failed to read image %s: %s", att.source_path, e)
                text += f"\n\n[Error reading image {att.display_name}: {e}]"
                continue
            image_blocks.append({"type": "image_url", "image_url": {"url": url}})
        elif att.is_text_like:
            content = await att.read_text()
            text += FILE_BLOCK.format(name=att.display_name, content=content)
        else:
            unprocessed.append(att.display_name)

    if unprocessed:
        text += UNPROCESSED_NOTE.format(names=", ".join(unprocessed))

    role = message.role.value
    if image_blocks:
        blocks: list[dict[str, Any]] = []
        if text.strip():
            blocks.append({"type": "text", "text": text})
        return {"role": role, "content": blocks + image_blocks}

    return {"role": role, "content": text}

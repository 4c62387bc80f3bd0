from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import PurePosixPath


@dataclass(frozen=True, slots=True)
class FileType:
    key: str
    name: str
    mime_types: tuple[str, ...]
    extensions: tuple[str, ...]
    thumbnail: bool = False
    metadata: bool = False
    preview: bool = False
    ai_analysis: bool = False
    download_only: bool = True
    embedding: bool = False
    errors: dict[str, str] = field(default_factory=dict)


REGISTRY: tuple[FileType, ...] = (
    FileType(
        key="image",
        name="Image",
        mime_types=("image/jpeg", "image/jpg", "image/png", "image/gif", "image/webp"),
        extensions=("jpg", "jpeg", "png", "gif", "webp"),
        thumbnail=True,
        metadata=True,
        preview=True,
        ai_analysis=True,
        download_only=False,
        embedding=True,
        errors={
            "processing_failed": "Unable to process image. The file format may not be supported.",
            "corrupted": "Unable to read image file. The file may be corrupted.",
        },
    ),
    FileType(
        key="tiff",
        name="TIFF",
        mime_types=("image/tiff", "image/tif"),
        extensions=("tiff", "tif"),
        thumbnail=True,
        metadata=True,
        preview=True,
        ai_analysis=True,
        download_only=False,
        embedding=True,
    ),
    FileType(
        key="avif",
        name="AVIF",
        mime_types=("image/avif",),
        extensions=("avif",),
        thumbnail=True,
        metadata=True,
        preview=True,
        ai_analysis=True,
        download_only=False,
        embedding=True,
    ),
    FileType(
        key="pdf",
        name="PDF",
        mime_types=("application/pdf",),
        extensions=("pdf",),
        thumbnail=True,
        metadata=True,
        preview=True,
        download_only=False,
    ),
    FileType(key="psd", name="Photoshop", mime_types=("image/vnd.adobe.photoshop",), extensions=("psd", "psb")),
    FileType(key="ai", name="Illustrator", mime_types=("application/postscript",), extensions=("ai",)),
    FileType(
        key="office",
        name="Office document",
        mime_types=(
            "application/msword",
            "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
            "application/vnd.ms-excel",
            "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
            "application/vnd.ms-powerpoint",
            "application/vnd.openxmlformats-officedocument.presentationml.presentation",
        ),
        extensions=("doc", "docx", "xls", "xlsx", "ppt", "pptx"),
    ),
    FileType(
        key="video",
        name="Video",
        mime_types=("video/mp4", "video/quicktime", "video/x-msvideo", "video/x-matroska", "video/webm"),
        extensions=("mp4", "mov", "avi", "mkv", "webm"),
    ),
)

_BY_MIME = {mime: entry for entry in REGISTRY for mime in entry.mime_types}
_BY_EXTENSION = {ext: entry for entry in REGISTRY for ext in entry.extensions}


def _extension(filename: str | None) -> str:
    return PurePosixPath(str(filename or "")).suffix.lower().lstrip(".")


def detect(mime_type: str | None, filename: str | None = None) -> FileType | None:
    """Resolve by mime type first, then by file extension."""
    mime = str(mime_type or "").split(";")[0].strip().lower()
    if mime and mime in _BY_MIME:
        return _BY_MIME[mime]
    return _BY_EXTENSION.get(_extension(filename))


def supports_thumbnail(mime_type: str | None, filename: str | None = None) -> bool:
    entry = detect(mime_type, filename)
    return bool(entry and entry.thumbnail)


def supports_metadata(mime_type: str | None, filename: str | None = None) -> bool:
    entry = detect(mime_type, filename)
    return bool(entry and entry.metadata)


def supports_ai_analysis(mime_type: str | None, filename: str | None = None) -> bool:
    entry = detect(mime_type, filename)
    return bool(entry and entry.ai_analysis)


def is_image(mime_type: str | None, filename: str | None = None) -> bool:
    """Embedding-eligible raster image."""
    entry = detect(mime_type, filename)
    return bool(entry and entry.embedding)

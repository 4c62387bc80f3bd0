import logging
import re
import shutil
import uuid
from pathlib import Path

from dam.core.config import settings

logger = logging.getLogger(__name__)

TEMP_PREFIX = "temp/"


def ensure_media_root(root: str | Path | None = None) -> Path:
    path = Path(root or settings.media_root)
    path.mkdir(parents=True, exist_ok=True)
    return path


def safe_storage_name(filename: str | None) -> str:
    base = Path(filename or "file").name or "file"
    base = re.sub(r"[^A-Za-z0-9._-]+", "-", base).strip("-")
    return base or "file"


def path_for_key(storage_key: str) -> Path:
    root = ensure_media_root().resolve()
    target = (root / str(storage_key or "").lstrip("/")).resolve()
    try:
        target.relative_to(root)
    except ValueError:
        raise ValueError("Invalid storage path")
    return target


def exists(storage_key: str | None) -> bool:
    if not storage_key:
        return False
    return path_for_key(storage_key).is_file()


def is_temp_key(storage_key: str | None) -> bool:
    return str(storage_key or "").lstrip("/").startswith(TEMP_PREFIX)


def temp_key(asset_id: uuid.UUID, filename: str | None) -> str:
    return f"{TEMP_PREFIX}{asset_id}/{safe_storage_name(filename)}"


def canonical_key(tenant_id: uuid.UUID, asset_id: uuid.UUID, filename: str | None) -> str:
    return f"assets/{tenant_id}/{asset_id}/{safe_storage_name(filename)}"


def thumbnail_key(asset_id: uuid.UUID, style: str) -> str:
    return f"thumbnails/{asset_id}/{safe_storage_name(style)}.jpg"


def write_bytes(storage_key: str, content: bytes) -> Path:
    destination = path_for_key(storage_key)
    destination.parent.mkdir(parents=True, exist_ok=True)
    destination.write_bytes(content)
    return destination


def move(source_key: str, destination_key: str) -> None:
    source = path_for_key(source_key)
    destination = path_for_key(destination_key)
    if not source.is_file():
        raise FileNotFoundError(f"Source file missing: {source_key}")
    destination.parent.mkdir(parents=True, exist_ok=True)
    try:
        source.replace(destination)
    except OSError:
        shutil.move(str(source), str(destination))
    _prune_empty_parent(source.parent)


def _prune_empty_parent(folder: Path) -> None:
    try:
        if folder.is_dir() and not any(folder.iterdir()):
            folder.rmdir()
    except OSError:
        logger.debug("storage_prune_skipped", extra={"folder": str(folder)})

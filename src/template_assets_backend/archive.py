"""
In-memory reading and writing of template asset archives.

A template asset is a zip with a fixed layout::

    manifest.json          describes which sections the archive provides
    template.json          serialized ProseMirror body of the data template
    theme/<Family>-<Style>.otf|ttf
    layout/<slug>.pdf
    frame/<name>.tex

Everything here works on the raw bytes with ``zipfile`` over ``io.BytesIO``;
nothing is extracted to disk. Any structural problem with the zip or the
manifest is fatal for the whole import, so these functions raise instead of
returning partial results.
"""

from __future__ import annotations

import io
import json
import logging
import zipfile
from typing import Any, Dict, Iterable, List, Mapping

from .errors import CorruptArchive, EntryNotFound, ManifestMalformed, ManifestMissing
from .models import ArchiveEntry

logger = logging.getLogger(__name__)

ALLOWED_FOLDERS = ("theme", "layout", "frame")
TEMPLATE_FILE = "template.json"


def _open(zip_bytes: bytes) -> zipfile.ZipFile:
    if not zip_bytes or not zipfile.is_zipfile(io.BytesIO(zip_bytes)):
        raise CorruptArchive("Uploaded file is not a valid zip archive.")
    try:
        return zipfile.ZipFile(io.BytesIO(zip_bytes), mode="r")
    except zipfile.BadZipFile as exc:
        raise CorruptArchive(f"Uploaded file is not a valid zip archive: {exc}") from exc


def list_entries(zip_bytes: bytes) -> List[ArchiveEntry]:
    """
    List every entry of the archive.

    Args:
        zip_bytes: Raw zip content

    Returns:
        Entries in archive order, directories included (their names end in ``/``)

    Raises:
        CorruptArchive: If the bytes are not a readable zip
    """
    with _open(zip_bytes) as zf:
        return [ArchiveEntry(name=info.filename, size=info.file_size) for info in zf.infolist()]


def read_entry(zip_bytes: bytes, name: str) -> bytes:
    """
    Extract one entry's content.

    Raises:
        CorruptArchive: If the bytes are not a readable zip or the entry is damaged
        EntryNotFound: If no entry has exactly this name
    """
    with _open(zip_bytes) as zf:
        try:
            return zf.read(name)
        except KeyError as exc:
            raise EntryNotFound(name) from exc
        except (zipfile.BadZipFile, zipfile.LargeZipFile, OSError) as exc:
            raise CorruptArchive(f"Failed to extract '{name}': {exc}") from exc


def read_manifest(zip_bytes: bytes, manifest_name: str) -> Dict[str, Any]:
    """
    Locate and decode the manifest at the archive root.

    Raises:
        CorruptArchive: If the bytes are not a readable zip
        ManifestMissing: If the archive has no manifest file
        ManifestMalformed: If the manifest is not a JSON object
    """
    try:
        raw = read_entry(zip_bytes, manifest_name)
    except EntryNotFound as exc:
        raise ManifestMissing(f"{manifest_name} not found in archive") from exc

    try:
        manifest = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ManifestMalformed([f"{manifest_name}: {exc}"]) from exc

    if not isinstance(manifest, dict):
        raise ManifestMalformed([f"{manifest_name}: expected a JSON object"])
    return manifest


def file_names(entries: Iterable[ArchiveEntry]) -> List[str]:
    """Entry names without directory entries."""
    return [entry.name for entry in entries if not entry.name.endswith("/")]


def filter_entries(entries: Iterable[ArchiveEntry], manifest_name: str) -> List[str]:
    """
    Keep only the names that belong to a template asset.

    Names under one of the allowed folders pass, as do the two root files
    (the manifest and ``template.json``). Stray files such as ``__MACOSX/``
    metadata are dropped.
    """
    allowed_files = {TEMPLATE_FILE, manifest_name}
    return [
        name
        for name in file_names(entries)
        if name in allowed_files or any(name.startswith(f"{folder}/") for folder in ALLOWED_FOLDERS)
    ]


def build_archive(files: Mapping[str, bytes]) -> bytes:
    """
    Write a deflated zip in memory.

    Args:
        files: Archive path to content; paths are written in sorted order

    Returns:
        The zip bytes
    """
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, mode="w", compression=zipfile.ZIP_DEFLATED) as zf:
        for name in sorted(files):
            zf.writestr(name, files[name])
    logger.debug(f"Built archive with {len(files)} entries")
    return buffer.getvalue()

"""
Entity preparers: one manifest section plus its archive files in, one
created entity out.

Preparers run inside the import transaction and share an
:class:`ImportContext`. They raise on anything fatal; the two degraded
paths (a font file that cannot be stored, an engine name with no match)
are logged and skipped so the rest of the entity is still created.
"""

from __future__ import annotations

import json
import logging
import re
import sqlite3
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

from omegaconf import DictConfig

from .archive import read_entry
from .entities import (
    Asset,
    ContentType,
    CurrentUser,
    DataTemplate,
    Flow,
    Frame,
    Layout,
    Theme,
    create_asset,
    create_content_type,
    create_data_template,
    create_default_states,
    create_flow,
    create_frame,
    create_layout,
    create_theme,
)
from .errors import EngineNotFound, EntityCreationFailed, FontExtractionFailed, StorageError
from .markdown import convert
from .models import (
    DataTemplateSection,
    FlowSection,
    FrameSection,
    ImportOptions,
    LayoutSection,
    Manifest,
    ThemeSection,
    VariantSection,
)
from .storage import asset_key
from .utils import basename, content_type_for, ensure_directory, new_id, rootname

logger = logging.getLogger(__name__)

FONT_STYLES = ("Regular", "Italic", "Bold", "BoldItalic")
FONT_PATTERN = re.compile(r"^theme/.*-(?P<style>\w+)\.(otf|ttf)$", re.IGNORECASE)
LAYOUT_PATTERN = re.compile(r"^layout/.*\.pdf$", re.IGNORECASE)
FRAME_PATTERN = re.compile(r"^frame/.*\.tex$", re.IGNORECASE)


@dataclass
class ImportContext:
    """
    State threaded through the steps of one import.

    Attributes:
        user: The importing user; entities are created in their organisation
        zip_bytes: The archive being imported
        entry_names: File names in the archive
        manifest: The validated manifest
        options: External ids that replace sections of the archive
        storage: Object storage for extracted files
        settings: The ``importer`` section of the configuration
        field_types: Field type name -> id, loaded once per import
        engines: Lower-cased engine name -> id, loaded once per import
        conn: Connection of the import transaction
        created: Entities created so far, keyed ``theme``, ``flow``,
            ``frame``, ``layout``, ``content_type``, ``data_template``
        stored_keys: Storage keys written by this import
        written_files: Local files written by this import
    """

    user: CurrentUser
    zip_bytes: bytes
    entry_names: List[str]
    manifest: Manifest
    options: ImportOptions
    storage: Any
    settings: DictConfig
    field_types: Mapping[str, str] = field(default_factory=dict)
    engines: Mapping[str, str] = field(default_factory=dict)
    conn: Optional[sqlite3.Connection] = None
    created: Dict[str, Any] = field(default_factory=dict)
    stored_keys: List[str] = field(default_factory=list)
    written_files: List[Path] = field(default_factory=list)


# --- shared file handling --------------------------------------------------


def _upload(storage, zip_bytes: bytes, organisation_id: str, entry_name: str) -> Tuple[str, str, str, int]:
    """Extract one entry and write it to storage; returns (asset_id, file_name, key, size)."""
    content = read_entry(zip_bytes, entry_name)
    asset_id = new_id()
    file_name = basename(entry_name)
    key = asset_key(organisation_id, asset_id, file_name)
    storage.put(key, content, content_type_for(file_name))
    return asset_id, file_name, key, len(content)


def _insert_asset(ctx: ImportContext, asset_type: str, uploaded: Tuple[str, str, str, int]) -> Asset:
    asset_id, file_name, key, size = uploaded
    return create_asset(
        ctx.conn,
        ctx.user,
        asset_id=asset_id,
        name=file_name,
        asset_type=asset_type,
        file_name=file_name,
        content_type=content_type_for(file_name),
        storage_key=key,
        size=size,
    )


def store_asset(ctx: ImportContext, entry_name: str, asset_type: str) -> Asset:
    uploaded = _upload(ctx.storage, ctx.zip_bytes, ctx.user.organisation_id, entry_name)
    ctx.stored_keys.append(uploaded[2])
    return _insert_asset(ctx, asset_type, uploaded)


def _single_entry(entity: str, names: List[str], pattern: re.Pattern, description: str) -> str:
    matches = [name for name in names if pattern.match(name)]
    if len(matches) != 1:
        raise EntityCreationFailed(entity, [f"{entity}_file: expected exactly one {description}, found {len(matches)}"])
    return matches[0]


# --- theme -----------------------------------------------------------------


def font_entries(entry_names: List[str]) -> List[str]:
    """Archive entries that are theme fonts named ``<family>-<Style>.otf|ttf``."""
    entries = []
    for name in entry_names:
        match = FONT_PATTERN.match(name)
        if match and match.group("style") in FONT_STYLES:
            entries.append(name)
    return entries


def _timed_upload(started: Dict[str, float], name: str, ctx: ImportContext) -> Tuple[Tuple[str, str, str, int], float]:
    """Upload one font; records when the task began running and returns how long it took."""
    started[name] = time.monotonic()
    uploaded = _upload(ctx.storage, ctx.zip_bytes, ctx.user.organisation_id, name)
    return uploaded, time.monotonic() - started[name]


def _await_font(future: Future, name: str, started: Dict[str, float], timeout: float) -> Tuple[str, str, str, int]:
    """
    Result of one font upload, allowing it ``timeout`` seconds from its own start.

    A task still queued after one full timeout counts as timed out.

    Raises:
        FuturesTimeoutError: If the upload ran, or would run, past its deadline
    """
    while True:
        start = started.get(name)
        remaining = timeout if start is None else start + timeout - time.monotonic()
        try:
            uploaded, elapsed = future.result(timeout=max(remaining, 0))
        except FuturesTimeoutError:
            if start is None and name in started:
                continue
            raise
        if elapsed > timeout:
            raise FuturesTimeoutError()
        return uploaded


def _discard_late_upload(ctx: ImportContext, future: Future) -> None:
    if not future.done() or future.cancelled() or future.exception() is not None:
        return
    key = future.result()[0][2]
    try:
        ctx.storage.delete(key)
    except StorageError as exc:
        logger.warning(f"Could not remove late font upload {key}: {exc}")


def extract_and_save_fonts(ctx: ImportContext, names: List[str]) -> str:
    """
    Store every font file as a theme asset, a few at a time.

    Extraction and upload run on a bounded thread pool; the asset rows are
    inserted here on the transaction's own thread, in archive order. A file
    that fails or exceeds the per-file timeout is logged and left out. The
    timeout of each file counts from the moment its upload starts.

    Returns:
        Comma-joined ids of the assets that were created
    """
    if not names:
        return ""

    timeout = float(ctx.settings.font_timeout)
    started: Dict[str, float] = {}
    executor = ThreadPoolExecutor(max_workers=int(ctx.settings.font_workers), thread_name_prefix="font-extract")
    futures: List[Tuple[str, Future]] = [
        (name, executor.submit(_timed_upload, started, name, ctx)) for name in names
    ]
    asset_ids = []
    try:
        for name, future in futures:
            try:
                uploaded = _await_font(future, name, started, timeout)
            except FuturesTimeoutError:
                future.cancel()
                _discard_late_upload(ctx, future)
                logger.error(FontExtractionFailed(name, f"timed out after {timeout:g}s").message)
                continue
            except Exception as exc:  # noqa: BLE001
                logger.error(FontExtractionFailed(name, str(exc)).message)
                continue

            ctx.stored_keys.append(uploaded[2])
            try:
                asset = _insert_asset(ctx, "theme", uploaded)
            except EntityCreationFailed as exc:
                logger.error(FontExtractionFailed(name, exc.message).message)
                continue
            asset_ids.append(asset.id)
    finally:
        executor.shutdown(wait=False, cancel_futures=True)

    logger.info(f"Stored {len(asset_ids)} of {len(names)} theme font files")
    return ",".join(asset_ids)


def theme_attrs(section: ThemeSection, asset_ids: str) -> Dict[str, Any]:
    first_font = section.fonts[0].font_name if section.fonts else None
    font = re.sub(r"[-\s]", "", rootname(first_font or section.name))
    colors = section.colors
    return {
        "name": section.name,
        "font": font,
        "primary_color": colors.get("primaryColor"),
        "secondary_color": colors.get("secondaryColor"),
        "body_color": colors.get("bodyColor"),
        "assets": asset_ids,
    }


def prepare_theme(ctx: ImportContext, section: ThemeSection) -> Theme:
    asset_ids = extract_and_save_fonts(ctx, font_entries(ctx.entry_names))
    return create_theme(ctx.conn, ctx.user, theme_attrs(section, asset_ids))


# --- flow ------------------------------------------------------------------


def prepare_flow(ctx: ImportContext, section: FlowSection) -> Flow:
    flow = create_flow(ctx.conn, ctx.user, {"name": section.name, "controlled": section.controlled})
    create_default_states(ctx.conn, flow)
    return flow


# --- frame -----------------------------------------------------------------


def local_frame_path(slugs_root: Path, frame: Frame) -> Path:
    """
    ``<slugs_root>/organisation/<org>/<frame name>/template.tex``.

    Raises:
        EntityCreationFailed: If the frame name is not a single directory
            name inside the organisation's slug directory
    """
    org_root = (slugs_root / "organisation" / frame.organisation_id).resolve()
    path = (org_root / frame.name / "template.tex").resolve()
    if frame.name in ("", ".", "..") or path.parent.parent != org_root:
        raise EntityCreationFailed("frame", [f"name: '{frame.name}' is not a valid directory name"])
    return path


def prepare_frame(ctx: ImportContext, section: FrameSection) -> Frame:
    """
    Create the frame from the single ``frame/*.tex`` file.

    Besides the stored asset, the raw template is written to the
    organisation's slug directory where the build engine picks it up.
    """
    entry_name = _single_entry("frame", ctx.entry_names, FRAME_PATTERN, "frame/*.tex file")
    asset = store_asset(ctx, entry_name, "frame")
    frame = create_frame(
        ctx.conn,
        ctx.user,
        {"name": section.name, "description": section.description, "type": section.type, "asset_id": asset.id},
    )

    path = local_frame_path(Path(ctx.settings.slugs_root), frame)
    ensure_directory(path.parent)
    path.write_bytes(read_entry(ctx.zip_bytes, entry_name))
    ctx.written_files.append(path)
    return frame


# --- layout ----------------------------------------------------------------


def resolve_engine(engine: Optional[str], engines: Mapping[str, str]) -> Optional[str]:
    """
    Engine id for a manifest engine string such as ``"pandoc/latex"``.

    Only the part before ``/`` names the engine; matching ignores case.
    Returns ``None`` (and logs) when nothing matches.
    """
    engine_name = (engine or "").split("/", 1)[0].strip()
    engine_id = engines.get(engine_name.lower())
    if engine_id is None:
        logger.warning(EngineNotFound(engine_name.capitalize()).message)
    return engine_id


def prepare_layout(ctx: ImportContext, section: LayoutSection, frame_id: Optional[str]) -> Layout:
    entry_name = _single_entry("layout", ctx.entry_names, LAYOUT_PATTERN, "layout/*.pdf file")
    engine_id = resolve_engine(section.engine, ctx.engines)

    try:
        asset_id = store_asset(ctx, entry_name, "layout").id
    except Exception as exc:  # noqa: BLE001
        logger.error(f"Failed to process entry: {entry_name}. Error: {exc}")
        asset_id = None

    defaults = ctx.settings.layout_defaults
    params = {
        "name": section.name,
        "description": section.description,
        "slug": section.slug,
        "meta": section.meta,
        "engine_id": engine_id,
        "asset_id": asset_id,
        "width": defaults.width,
        "height": defaults.height,
        "unit": defaults.unit,
        "frame_id": frame_id,
    }
    return create_layout(ctx.conn, ctx.user, params)


# --- variant ---------------------------------------------------------------


def variant_fields(section: VariantSection, field_types: Mapping[str, str]) -> List[Dict[str, Any]]:
    """
    Field params for a content type.

    Types match the field type table after capitalisation (``"string"`` ->
    ``"String"``). An unknown type keeps ``field_type_id`` as ``None``;
    content type creation rejects it.
    """
    fields = []
    for variant_field in section.fields:
        field_type_id = field_types.get(variant_field.type.capitalize())
        if field_type_id is None:
            logger.warning(f"Unknown field type '{variant_field.type}' for field '{variant_field.name}'")
        fields.append(
            {
                "field_type_id": field_type_id,
                "key": variant_field.name,
                "name": variant_field.name,
                "description": variant_field.description,
            }
        )
    return fields


def prepare_content_type(
    ctx: ImportContext,
    section: VariantSection,
    theme_id: Optional[str],
    layout_id: Optional[str],
    flow_id: Optional[str],
) -> ContentType:
    params = {
        "name": section.name,
        "description": section.description,
        "color": section.color,
        "prefix": section.prefix,
        "layout_id": layout_id,
        "flow_id": flow_id,
        "theme_id": theme_id,
        "fields": variant_fields(section, ctx.field_types),
    }
    return create_content_type(ctx.conn, ctx.user, params)


# --- data template ---------------------------------------------------------


def load_template_tree(zip_bytes: bytes, template_file: str) -> Tuple[Dict[str, Any], str]:
    """
    Read the serialized ProseMirror tree from ``template.json``.

    The file holds ``{"data": ...}`` where ``data`` is either the tree
    itself or the tree serialized to a JSON string.

    Returns:
        The decoded tree and its JSON string form
    """
    try:
        payload = json.loads(read_entry(zip_bytes, template_file).decode("utf-8"))
        data = payload["data"]
        tree = json.loads(data) if isinstance(data, str) else data
    except (UnicodeDecodeError, json.JSONDecodeError, KeyError, TypeError) as exc:
        raise EntityCreationFailed("data_template", [f"{template_file}: {exc}"]) from exc
    if not isinstance(tree, dict):
        raise EntityCreationFailed("data_template", [f"{template_file}: data must be a document object"])
    return tree, data if isinstance(data, str) else json.dumps(tree)


def prepare_data_template(ctx: ImportContext, section: DataTemplateSection, content_type: ContentType) -> DataTemplate:
    tree, serialized = load_template_tree(ctx.zip_bytes, ctx.settings.template_file)
    params = {
        "title": section.title,
        "title_template": section.title_template,
        "data": convert(tree),
        "serialized": {"data": serialized},
    }
    return create_data_template(ctx.conn, ctx.user, content_type, params)

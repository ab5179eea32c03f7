"""
Export organisation entities back into a template asset archive.

The archive written here has exactly the shape the importer reads, so an
export can be imported into another organisation (or the same one, where
names pick up a numeric suffix).
"""

from __future__ import annotations

import json
import logging
import sqlite3
from typing import Any, Dict, Tuple

from omegaconf import DictConfig

from .archive import build_archive
from .entities import (
    CurrentUser,
    get_asset,
    get_content_type,
    get_data_template,
    get_engine_name,
    get_flow,
    get_frame,
    get_layout,
    get_theme,
)
from .errors import NotFound
from .models import ExportRequest
from .utils import sanitize_label

logger = logging.getLogger(__name__)

DEFAULT_ENGINE = "pandoc/latex"


def _require(entity, label: str):
    if entity is None:
        raise NotFound(f"{label} not found")
    return entity


def _stored_file(conn: sqlite3.Connection, storage, asset_id: str, user: CurrentUser) -> Tuple[str, bytes]:
    asset = _require(get_asset(conn, asset_id, user.organisation_id), f"Asset {asset_id}")
    return asset.file_name, storage.get(asset.storage_key)


def export_template(
    conn: sqlite3.Connection,
    storage,
    settings: DictConfig,
    user: CurrentUser,
    request: ExportRequest,
) -> Tuple[str, bytes]:
    """
    Build a template asset archive from existing entities.

    Args:
        conn: Read connection
        storage: Object storage holding the font, layout and frame files
        settings: The ``importer`` section of the configuration
        user: Caller; every id must belong to their organisation
        request: Ids of the entities to export. Flow and frame fall back to
            the ones the content type and layout point at.

    Returns:
        Archive file name and zip bytes

    Raises:
        NotFound: If an id is unknown in the organisation or a stored file is missing
    """
    org = user.organisation_id
    theme = _require(get_theme(conn, request.theme_id, org), "Theme")
    layout = _require(get_layout(conn, request.layout_id, org), "Layout")
    content_type = _require(get_content_type(conn, request.content_type_id, org), "Content type")
    data_template = _require(get_data_template(conn, request.data_template_id, org), "Data template")

    files: Dict[str, bytes] = {}
    manifest: Dict[str, Any] = {}

    fonts = []
    for asset_id in theme.assets:
        file_name, content = _stored_file(conn, storage, asset_id, user)
        path = f"theme/{file_name}"
        files[path] = content
        fonts.append({"fontName": theme.font or theme.name, "filePath": path})
    manifest["theme"] = {
        "name": theme.name,
        "colors": {
            "primaryColor": theme.primary_color,
            "secondaryColor": theme.secondary_color,
            "bodyColor": theme.body_color,
        },
        "fonts": fonts,
    }

    if layout.asset_id is None:
        raise NotFound(f"Layout {layout.name} has no stored PDF")
    file_name, content = _stored_file(conn, storage, layout.asset_id, user)
    slug_file = f"layout/{file_name}"
    files[slug_file] = content
    engine_name = get_engine_name(conn, layout.engine_id)
    manifest["layout"] = {
        "name": layout.name,
        "slug": layout.slug,
        "slug_file": slug_file,
        "meta": layout.meta,
        "description": layout.description,
        "engine": f"{engine_name.lower()}/latex" if engine_name else DEFAULT_ENGINE,
    }

    flow_id = request.flow_id or content_type.flow_id
    if flow_id:
        flow = _require(get_flow(conn, flow_id, org), "Flow")
        manifest["flow"] = {"name": flow.name, "controlled": flow.controlled}

    frame_id = request.frame_id or layout.frame_id
    if frame_id:
        frame = _require(get_frame(conn, frame_id, org), "Frame")
        if frame.asset_id:
            file_name, content = _stored_file(conn, storage, frame.asset_id, user)
            files[f"frame/{file_name}"] = content
            manifest["frame"] = {"name": frame.name, "description": frame.description, "type": frame.type}
        else:
            logger.warning(f"Frame {frame.name} has no stored template; leaving it out of the export")

    manifest["variant"] = {
        "name": content_type.name,
        "color": content_type.color,
        "description": content_type.description,
        "prefix": content_type.prefix,
        "fields": [
            {"name": field.name, "description": field.description, "type": (field.field_type or "").lower()}
            for field in content_type.fields
        ],
    }
    manifest["data_template"] = {"title": data_template.title, "title_template": data_template.title_template}

    files[settings.template_file] = json.dumps({"data": data_template.serialized.get("data")}).encode("utf-8")
    files[settings.manifest_name] = json.dumps(manifest, indent=2).encode("utf-8")

    archive_name = f"{sanitize_label(data_template.title, 'template')}.zip"
    logger.info(f"Exported {len(files)} files for data template {data_template.id} as {archive_name}")
    return archive_name, build_archive(files)

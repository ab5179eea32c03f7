"""
Import orchestration and the template asset service.

:func:`run_import` turns a validated archive into organisation entities in
one transaction. :class:`TemplateAssetService` is what the API talks to: it
stores uploaded archives, lists and updates them, and runs imports of a
stored or freshly uploaded zip.
"""

from __future__ import annotations

import logging
from pathlib import PurePosixPath
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple
from urllib.parse import urlparse

import httpx
from omegaconf import DictConfig

from .archive import file_names, filter_entries, list_entries, read_manifest
from .database import Database
from .entities import (
    CurrentUser,
    TemplateAsset,
    create_template_asset,
    delete_template_asset,
    engine_table,
    field_type_table,
    get_content_type,
    get_flow,
    get_frame,
    get_layout,
    get_public_template_asset,
    get_public_template_asset_by_key,
    get_template_asset,
    get_theme,
    list_public_template_assets,
    list_template_assets,
    update_template_asset,
)
from .errors import ArchiveDownloadFailed, EntityCreationFailed, NotFound, StorageError
from .exporter import export_template
from .models import ExportRequest, ImportOptions, Manifest
from .naming import unique_name
from .preparers import (
    ImportContext,
    prepare_content_type,
    prepare_data_template,
    prepare_flow,
    prepare_frame,
    prepare_layout,
    prepare_theme,
)
from .storage import public_template_key, public_thumbnail_key, template_asset_key
from .utils import new_id
from .validation import (
    existing_items,
    missing_sections,
    parse_manifest,
    validate,
    validate_folders,
    validate_required_files,
)

logger = logging.getLogger(__name__)

OPTION_KEYS = ("theme_id", "layout_id", "flow_id", "content_type_id", "frame_id")

# option key -> (entity kind, org-scoped getter)
_OPTION_LOOKUPS = {
    "theme_id": ("theme", get_theme),
    "layout_id": ("layout", get_layout),
    "flow_id": ("flow", get_flow),
    "content_type_id": ("content_type", get_content_type),
    "frame_id": ("frame", get_frame),
}


def format_opts(params: Optional[Mapping[str, Any]]) -> ImportOptions:
    """Pick the external ids out of request params, dropping empty values."""
    params = params or {}
    return ImportOptions(**{key: params[key] for key in OPTION_KEYS if params.get(key)})


# --- import steps ----------------------------------------------------------


def _renamed(ctx: ImportContext, kind: str, name: str) -> str:
    return unique_name(ctx.conn, kind, name, ctx.user, int(ctx.settings.max_name_attempts))


def _created_id(ctx: ImportContext, key: str) -> Optional[str]:
    entity = ctx.created.get(key)
    return entity.id if entity is not None else None


def _theme_step(ctx: ImportContext) -> None:
    section = ctx.manifest.theme
    if section is None:
        return
    section = section.model_copy(update={"name": _renamed(ctx, "theme", section.name)})
    ctx.created["theme"] = prepare_theme(ctx, section)


def _flow_step(ctx: ImportContext) -> None:
    section = ctx.manifest.flow
    if section is None:
        return
    section = section.model_copy(update={"name": _renamed(ctx, "flow", section.name)})
    ctx.created["flow"] = prepare_flow(ctx, section)


def _frame_step(ctx: ImportContext) -> None:
    section = ctx.manifest.frame
    if section is None:
        return
    section = section.model_copy(update={"name": _renamed(ctx, "frame", section.name)})
    ctx.created["frame"] = prepare_frame(ctx, section)


def _layout_step(ctx: ImportContext) -> None:
    section = ctx.manifest.layout
    if section is None:
        return
    section = section.model_copy(update={"name": _renamed(ctx, "layout", section.name)})
    frame_id = ctx.options.frame_id or _created_id(ctx, "frame")
    ctx.created["layout"] = prepare_layout(ctx, section, frame_id)


def _variant_step(ctx: ImportContext) -> None:
    section = ctx.manifest.variant
    if section is None:
        return
    section = section.model_copy(update={"name": _renamed(ctx, "content_type", section.name)})
    ctx.created["content_type"] = prepare_content_type(
        ctx,
        section,
        theme_id=ctx.options.theme_id or _created_id(ctx, "theme"),
        layout_id=ctx.options.layout_id or _created_id(ctx, "layout"),
        flow_id=ctx.options.flow_id or _created_id(ctx, "flow"),
    )


def _data_template_step(ctx: ImportContext) -> None:
    section = ctx.manifest.data_template
    if section is None:
        return
    content_type = ctx.created.get("content_type")
    if content_type is None and ctx.options.content_type_id:
        content_type = get_content_type(ctx.conn, ctx.options.content_type_id, ctx.user.organisation_id)
    if content_type is None:
        raise EntityCreationFailed("data_template", ["content_type_id: content type id not found"])
    section = section.model_copy(update={"title": _renamed(ctx, "data_template", section.title)})
    ctx.created["data_template"] = prepare_data_template(ctx, section, content_type)


IMPORT_STEPS: List[Tuple[str, Callable[[ImportContext], None]]] = [
    ("theme", _theme_step),
    ("flow", _flow_step),
    ("frame", _frame_step),
    ("layout", _layout_step),
    ("variant", _variant_step),
    ("data_template", _data_template_step),
]

# result key -> key in ImportContext.created
RESULT_KEYS = (
    ("theme", "theme"),
    ("flow", "flow"),
    ("frame", "frame"),
    ("layout", "layout"),
    ("variant", "content_type"),
    ("data_template", "data_template"),
)


def _check_option_ids(ctx: ImportContext) -> None:
    for key, (kind, getter) in _OPTION_LOOKUPS.items():
        value = getattr(ctx.options, key)
        if value and getter(ctx.conn, value, ctx.user.organisation_id) is None:
            raise EntityCreationFailed(kind, [f"{key}: {kind.replace('_', ' ')} id not found"])


def _cleanup(ctx: ImportContext) -> None:
    """Remove blobs and files written by an import that rolled back."""
    for key in ctx.stored_keys:
        try:
            ctx.storage.delete(key)
        except Exception as exc:  # noqa: BLE001
            logger.warning(f"Could not remove stored file {key} after failed import: {exc}")
    for path in ctx.written_files:
        try:
            path.unlink(missing_ok=True)
        except OSError as exc:
            logger.warning(f"Could not remove {path} after failed import: {exc}")


def run_import(
    database: Database,
    storage,
    settings: DictConfig,
    user: CurrentUser,
    zip_bytes: bytes,
    options: Optional[ImportOptions] = None,
) -> Dict[str, Any]:
    """
    Create every entity an archive describes, atomically.

    Args:
        database: Store the entities are written to
        storage: Object storage for fonts, layout PDF and frame template
        settings: The ``importer`` section of the configuration
        user: Importing user; entities land in their organisation
        zip_bytes: The template asset archive
        options: External ids that stand in for missing sections

    Returns:
        Created entities keyed ``theme``, ``flow``, ``frame``, ``layout``,
        ``variant`` and ``data_template``; keys of skipped steps are absent

    Raises:
        TemplateAssetError: Any structural, validation or creation failure.
            Nothing is left behind in the store when this is raised.
    """
    options = options or ImportOptions()
    entry_names = file_names(list_entries(zip_bytes))
    manifest = parse_manifest(read_manifest(zip_bytes, settings.manifest_name))
    validate(manifest, entry_names, options)

    ctx = ImportContext(
        user=user,
        zip_bytes=zip_bytes,
        entry_names=entry_names,
        manifest=manifest,
        options=options,
        storage=storage,
        settings=settings,
    )
    step_name = "setup"
    try:
        with database.transaction() as conn:
            ctx.conn = conn
            ctx.field_types = field_type_table(conn)
            ctx.engines = {name.lower(): engine_id for name, engine_id in engine_table(conn).items()}
            _check_option_ids(ctx)
            for step_name, step in IMPORT_STEPS:
                step(ctx)
    except Exception as exc:
        logger.error(f"Import for organisation {user.organisation_id} failed at step '{step_name}': {exc}")
        _cleanup(ctx)
        raise

    result = {key: ctx.created[created_key] for key, created_key in RESULT_KEYS if created_key in ctx.created}
    logger.info(f"Imported {', '.join(result) or 'nothing'} for organisation {user.organisation_id}")
    return result


# --- service ---------------------------------------------------------------


class TemplateAssetService:
    """
    Stored template archives and the imports run from them.

    Attributes:
        database: Entity store
        storage: Object storage holding archives and extracted files
        settings: The ``importer`` section of the configuration
        signed_url_expiration: Lifetime in seconds of the public template URLs
    """

    def __init__(
        self, database: Database, storage, settings: DictConfig, signed_url_expiration: int = 3600
    ) -> None:
        self.database = database
        self.storage = storage
        self.settings = settings
        self.signed_url_expiration = signed_url_expiration

    @property
    def manifest_name(self) -> str:
        return self.settings.manifest_name

    def process_template_asset(self, zip_bytes: bytes) -> Tuple[Manifest, Dict[str, Any], List[str]]:
        """
        Validate an uploaded archive without creating anything.

        Checks the two root files, the manifest schema and the folders of the
        sections the manifest declares.

        Returns:
            The parsed manifest, its raw JSON, and the archive file names that
            belong to the template
        """
        entries = list_entries(zip_bytes)
        validate_required_files(file_names(entries), self.manifest_name)
        raw_manifest = read_manifest(zip_bytes, self.manifest_name)
        manifest = parse_manifest(raw_manifest)
        names = filter_entries(entries, self.manifest_name)
        validate_folders(manifest, names)
        return manifest, raw_manifest, names

    def create_template_asset(
        self,
        user: CurrentUser,
        *,
        name: Optional[str],
        description: Optional[str],
        file_name: str,
        zip_bytes: bytes,
    ) -> TemplateAsset:
        template_asset_id = new_id()
        key = template_asset_key(user.organisation_id, template_asset_id, file_name)
        return self._store_template_asset(
            user, template_asset_id, key, name=name, description=description, file_name=file_name, zip_bytes=zip_bytes
        )

    def _store_template_asset(
        self,
        user: Optional[CurrentUser],
        template_asset_id: str,
        key: str,
        *,
        name: Optional[str],
        description: Optional[str],
        file_name: str,
        zip_bytes: bytes,
    ) -> TemplateAsset:
        _, raw_manifest, names = self.process_template_asset(zip_bytes)
        self.storage.put(key, zip_bytes, "application/zip")
        params = {
            "id": template_asset_id,
            "name": name or PurePosixPath(file_name).stem,
            "description": description,
            "file_name": file_name,
            "file_size": len(zip_bytes),
            "storage_key": key,
            "manifest": raw_manifest,
            "file_entries": names,
        }
        try:
            with self.database.transaction() as conn:
                template_asset = create_template_asset(conn, user, params)
        except Exception:
            self.storage.delete(key)
            raise
        logger.info(f"Stored template asset {template_asset.id} ({len(zip_bytes)} bytes) at {key}")
        return template_asset

    def list_template_assets(self, user: CurrentUser) -> List[TemplateAsset]:
        with self.database.connection() as conn:
            return list_template_assets(conn, user.organisation_id)

    def publish_template_asset(
        self, *, name: Optional[str], description: Optional[str], file_name: str, zip_bytes: bytes
    ) -> TemplateAsset:
        """
        Store an archive as a public template, shared by every organisation.

        The archive lands at ``public/templates/<rootname>/<rootname>.zip``,
        where ``rootname`` is the file name without its extension.

        Raises:
            EntityCreationFailed: If a public template with that rootname exists
        """
        rootname = PurePosixPath(file_name).stem
        key = public_template_key(rootname)
        with self.database.connection() as conn:
            if get_public_template_asset_by_key(conn, key) is not None:
                raise EntityCreationFailed(
                    "template_asset", [f"file_name: a public template named '{rootname}' already exists"]
                )
        return self._store_template_asset(
            None, new_id(), key, name=name, description=description, file_name=file_name, zip_bytes=zip_bytes
        )

    def public_template_asset_index(self) -> List[Dict[str, Any]]:
        """Public templates, newest first, with signed archive and thumbnail URLs."""
        with self.database.connection() as conn:
            template_assets = list_public_template_assets(conn)
        index = []
        for template_asset in template_assets:
            rootname = PurePosixPath(template_asset.file_name).stem
            index.append(
                {
                    "id": template_asset.id,
                    "name": template_asset.name,
                    "description": template_asset.description,
                    "file_name": rootname,
                    "file_size": template_asset.file_size,
                    "zip_file_url": self.storage.signed_url(public_template_key(rootname), self.signed_url_expiration),
                    "thumbnail_url": self.storage.signed_url(
                        public_thumbnail_key(rootname), self.signed_url_expiration
                    ),
                }
            )
        return index

    def download_public_template(self, template_name: str) -> str:
        """
        Signed URL of a public template archive.

        Raises:
            NotFound: If no public template is stored under that name
        """
        try:
            key = public_template_key(template_name)
        except StorageError as exc:
            raise NotFound("Public template not found") from exc
        with self.database.connection() as conn:
            if get_public_template_asset_by_key(conn, key) is None:
                raise NotFound("Public template not found")
        return self.storage.signed_url(key, self.signed_url_expiration)

    def get_template_asset(self, template_asset_id: str, user: CurrentUser) -> TemplateAsset:
        with self.database.connection() as conn:
            template_asset = get_template_asset(conn, template_asset_id, user.organisation_id)
        if template_asset is None:
            raise NotFound("Template asset not found")
        return template_asset

    def update_template_asset(self, template_asset: TemplateAsset, params: Mapping[str, Any]) -> TemplateAsset:
        with self.database.transaction() as conn:
            return update_template_asset(conn, template_asset, params)

    def delete_template_asset(self, template_asset: TemplateAsset) -> None:
        with self.database.transaction() as conn:
            delete_template_asset(conn, template_asset)
        self.storage.delete(template_asset.storage_key)
        logger.info(f"Deleted template asset {template_asset.id}")

    def get_importable_template_asset(self, template_asset_id: str, user: CurrentUser) -> TemplateAsset:
        """The organisation's own template asset, or a public one."""
        with self.database.connection() as conn:
            template_asset = get_template_asset(conn, template_asset_id, user.organisation_id)
            if template_asset is None:
                template_asset = get_public_template_asset(conn, template_asset_id)
        if template_asset is None:
            raise NotFound("Template asset not found")
        return template_asset

    def download_zip_from_storage(self, user: CurrentUser, template_asset_id: str) -> bytes:
        template_asset = self.get_importable_template_asset(template_asset_id, user)
        return self.storage.get(template_asset.storage_key)

    def fetch_zip_from_url(self, url: str) -> Tuple[str, bytes]:
        """
        Download an archive over HTTP.

        Returns:
            File name taken from the URL path, and the response body

        Raises:
            ArchiveDownloadFailed: On a transport error or a non-200 answer
        """
        try:
            response = httpx.get(url, follow_redirects=True, timeout=float(self.settings.download_timeout))
        except httpx.HTTPError as exc:
            raise ArchiveDownloadFailed(f"HTTP request failed: {exc}") from exc
        if response.status_code != 200:
            raise ArchiveDownloadFailed(f"Failed to fetch file. Received status code: {response.status_code}.")
        file_name = PurePosixPath(urlparse(url).path).name or "template.zip"
        return file_name, response.content

    def pre_import_template(self, zip_bytes: bytes) -> Dict[str, Any]:
        """Which sections the archive provides and which must come from external ids."""
        manifest = parse_manifest(read_manifest(zip_bytes, self.manifest_name))
        return {"existing_items": existing_items(manifest), "missing_items": missing_sections(manifest)}

    def import_template(
        self, user: CurrentUser, zip_bytes: bytes, options: Optional[ImportOptions] = None
    ) -> Dict[str, Any]:
        return run_import(self.database, self.storage, self.settings, user, zip_bytes, options)

    def import_template_asset(
        self, user: CurrentUser, template_asset_id: str, options: Optional[ImportOptions] = None
    ) -> Dict[str, Any]:
        zip_bytes = self.download_zip_from_storage(user, template_asset_id)
        return self.import_template(user, zip_bytes, options)

    def export_template(self, user: CurrentUser, request: ExportRequest) -> Tuple[str, bytes]:
        with self.database.connection() as conn:
            return export_template(conn, self.storage, self.settings, user, request)

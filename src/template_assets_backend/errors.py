"""
Exception hierarchy for the template asset pipeline.

Every error raised by the archive reader, the manifest validator, the entity
preparers and the converter derives from :class:`TemplateAssetError`. Each
class carries a machine-readable ``code`` and the HTTP status the API layer
answers with, so routes never need to translate errors one by one.

Fatal errors propagate out of the import transaction and roll it back.
``FontExtractionFailed`` and ``EngineNotFound`` are the two non-fatal kinds:
preparers build them for logging and carry on.
"""

from __future__ import annotations

from typing import Any, Dict, List


class TemplateAssetError(Exception):
    """Base class for all template asset errors."""

    code = "template_asset_error"
    status_code = 400

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "detail": self.message}


class CorruptArchive(TemplateAssetError):
    code = "corrupt_archive"


class EntryNotFound(TemplateAssetError):
    code = "entry_not_found"

    def __init__(self, name: str) -> None:
        super().__init__(f"Entry '{name}' not found in archive")
        self.name = name


class ManifestMissing(TemplateAssetError):
    code = "manifest_missing"


class ManifestMalformed(TemplateAssetError):
    """The manifest could not be decoded or failed the schema check."""

    code = "manifest_malformed"

    def __init__(self, messages: List[str]) -> None:
        super().__init__("; ".join(messages))
        self.messages = messages

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "detail": self.message, "messages": self.messages}


class MissingRequiredFiles(TemplateAssetError):
    code = "missing_required_files"

    def __init__(self, missing_files: List[str]) -> None:
        super().__init__(f"Required items not found in this zip file: {', '.join(missing_files)}")
        self.missing_files = missing_files


class MissingRequiredSections(TemplateAssetError):
    """Aggregated list of required manifest sections with no external id either."""

    code = "missing_required_sections"
    status_code = 422

    def __init__(self, missing_items: List[Dict[str, str]]) -> None:
        names = ", ".join(item["item"] for item in missing_items)
        super().__init__(f"Missing required items: {names}")
        self.missing_items = missing_items

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "detail": self.message, "missing_items": self.missing_items}


class MissingRequiredFolders(TemplateAssetError):
    code = "missing_required_folders"
    status_code = 422

    def __init__(self, missing_folders: List[str]) -> None:
        super().__init__(f"Missing required folders for: {', '.join(missing_folders)}")
        self.missing_folders = missing_folders

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "detail": self.message, "missing_folders": self.missing_folders}


class EntityCreationFailed(TemplateAssetError):
    """Wraps the validation error of whichever entity step failed."""

    code = "entity_creation_failed"
    status_code = 422

    def __init__(self, entity: str, errors: List[str]) -> None:
        super().__init__(f"{entity}: {'; '.join(errors)}")
        self.entity = entity
        self.errors = errors

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "detail": self.message, "entity": self.entity, "errors": self.errors}


class NameConflictError(EntityCreationFailed):
    code = "name_conflict"

    def __init__(self, entity: str, name: str, attempts: int) -> None:
        super().__init__(entity, [f"no free name found for '{name}' after {attempts} attempts"])
        self.name = name


class FontExtractionFailed(TemplateAssetError):
    code = "font_extraction_failed"

    def __init__(self, file_name: str, reason: str) -> None:
        super().__init__(f"Failed to create theme asset {file_name}: {reason}")
        self.file_name = file_name


class EngineNotFound(TemplateAssetError):
    code = "engine_not_found"
    status_code = 404

    def __init__(self, engine: str) -> None:
        super().__init__(f"No engine found with the name {engine}")
        self.engine = engine


class NotFound(TemplateAssetError):
    code = "not_found"
    status_code = 404


class ArchiveDownloadFailed(TemplateAssetError):
    code = "archive_download_failed"
    status_code = 502


class StorageError(TemplateAssetError):
    """Raised when an object storage read/write fails."""

    code = "storage_error"
    status_code = 502


class InvalidDocumentError(TemplateAssetError):
    code = "invalid_document"
    status_code = 422


class InvalidNodeType(InvalidDocumentError):
    code = "invalid_node_type"


class InvalidMarkType(InvalidDocumentError):
    code = "invalid_mark_type"

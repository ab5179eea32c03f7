from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

# --- Manifest schema -------------------------------------------------------


class ManifestSection(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)


class FontSpec(ManifestSection):
    font_name: Optional[str] = Field(default=None, alias="fontName")
    file_path: Optional[str] = Field(default=None, alias="filePath")


class ThemeSection(ManifestSection):
    name: str
    colors: Dict[str, Optional[str]] = Field(default_factory=dict)
    fonts: List[FontSpec] = Field(default_factory=list)


class LayoutSection(ManifestSection):
    name: str
    slug: str
    description: Optional[str] = None
    meta: Optional[Any] = None
    engine: str = "pandoc/latex"
    slug_file: Optional[str] = None


class FlowSection(ManifestSection):
    name: str
    controlled: bool = False


class FrameSection(ManifestSection):
    name: str
    description: Optional[str] = None
    type: Literal["latex", "typst"] = "latex"


class VariantField(ManifestSection):
    name: str
    type: str
    description: Optional[str] = None


class VariantSection(ManifestSection):
    name: str
    prefix: str
    description: Optional[str] = None
    color: Optional[str] = None
    fields: List[VariantField] = Field(default_factory=list)


class DataTemplateSection(ManifestSection):
    title: str
    title_template: Optional[str] = None


class Manifest(BaseModel):
    """Parsed manifest; every section is optional at the schema level."""

    model_config = ConfigDict(extra="allow")

    theme: Optional[ThemeSection] = None
    layout: Optional[LayoutSection] = None
    flow: Optional[FlowSection] = None
    frame: Optional[FrameSection] = None
    variant: Optional[VariantSection] = None
    data_template: Optional[DataTemplateSection] = None

    def has_section(self, name: str) -> bool:
        return getattr(self, name, None) is not None


# --- Import options --------------------------------------------------------


class ImportOptions(BaseModel):
    """External ids that let an import reuse existing entities."""

    theme_id: Optional[str] = None
    layout_id: Optional[str] = None
    flow_id: Optional[str] = None
    content_type_id: Optional[str] = None
    frame_id: Optional[str] = None

    def id_for(self, section: str) -> Optional[str]:
        key = "content_type_id" if section == "variant" else f"{section}_id"
        return getattr(self, key, None)


# --- API bodies ------------------------------------------------------------


class ArchiveEntry(BaseModel):
    name: str
    size: int


class TemplateAssetSummary(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    file_name: str
    file_size: int
    organisation_id: Optional[str] = None
    creator_id: Optional[str] = None
    manifest: Dict[str, Any]
    file_entries: List[str]
    inserted_at: datetime


class TemplateAssetUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=160)
    description: Optional[str] = None


class PublicTemplateAsset(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    file_name: str
    file_size: int
    zip_file_url: str
    thumbnail_url: str


class PublicTemplateDownload(BaseModel):
    zip_file_url: str


class PreImportResult(BaseModel):
    existing_items: Dict[str, Any]
    missing_items: List[str]


class ImportResult(BaseModel):
    theme: Optional[Dict[str, Any]] = None
    flow: Optional[Dict[str, Any]] = None
    frame: Optional[Dict[str, Any]] = None
    layout: Optional[Dict[str, Any]] = None
    variant: Optional[Dict[str, Any]] = None
    data_template: Optional[Dict[str, Any]] = None


class ExportRequest(BaseModel):
    theme_id: str
    layout_id: str
    content_type_id: str
    data_template_id: str
    flow_id: Optional[str] = None
    frame_id: Optional[str] = None


class MarkdownRequest(BaseModel):
    document: Dict[str, Any]


class MarkdownResponse(BaseModel):
    markdown: str


class APIKeyCreate(BaseModel):
    owner: str = Field(..., min_length=1)
    organisation_id: str = Field(..., min_length=1)
    max_imports: int = Field(default=100, ge=1)


# --- Import jobs -----------------------------------------------------------


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class JobEvent(BaseModel):
    timestamp: datetime
    message: str


class JobSummary(BaseModel):
    id: str
    template_asset_id: str
    organisation_id: str
    status: JobStatus
    created_at: datetime
    updated_at: datetime


class JobDetail(JobSummary):
    options: Dict[str, Any]
    result: Dict[str, Any]
    events: List[JobEvent]
    error: Optional[str] = None

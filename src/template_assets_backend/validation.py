"""
Structural validation of a template asset before anything is created.

Three independent checks, each reporting every problem it finds at once so
an author can fix the archive in one pass:

- the two root files must be present (:func:`validate_required_files`)
- the manifest must match the typed schema (:func:`parse_manifest`)
- the required sections must be provided, by the archive or by an external
  id, and every folder-backed section must ship its folder (:func:`validate`)
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Mapping, Optional

from pydantic import ValidationError

from .archive import TEMPLATE_FILE
from .errors import ManifestMalformed, MissingRequiredFiles, MissingRequiredFolders, MissingRequiredSections
from .models import ImportOptions, Manifest

REQUIRED_SECTIONS = ("theme", "layout", "flow", "variant")
FOLDER_SECTIONS = ("theme", "layout", "frame")


def parse_manifest(raw: Mapping[str, Any]) -> Manifest:
    """
    Check the decoded manifest against the schema.

    Raises:
        ManifestMalformed: With one ``"<field.path>: <message>"`` entry per error
    """
    try:
        return Manifest.model_validate(dict(raw))
    except ValidationError as exc:
        raise ManifestMalformed(_format_errors(exc)) from exc


def _format_errors(exc: ValidationError) -> List[str]:
    messages = []
    for error in exc.errors():
        path = ".".join(str(part) for part in error["loc"])
        messages.append(f"{path}: {error['msg']}" if path else error["msg"])
    return messages


def validate_required_files(entry_names: Iterable[str], manifest_name: str) -> None:
    names = set(entry_names)
    missing = [name for name in (TEMPLATE_FILE, manifest_name) if name not in names]
    if missing:
        raise MissingRequiredFiles(missing)


def missing_sections(manifest: Manifest, options: Optional[ImportOptions] = None) -> List[str]:
    """Required sections that neither the manifest nor an external id provides."""
    options = options or ImportOptions()
    return [
        section
        for section in REQUIRED_SECTIONS
        if not manifest.has_section(section) and options.id_for(section) is None
    ]


def validate_required_sections(manifest: Manifest, options: Optional[ImportOptions] = None) -> None:
    missing = missing_sections(manifest, options)
    if missing:
        raise MissingRequiredSections(
            [
                {
                    "item": item,
                    "message": f"Either '{item}' must be in the ZIP or the corresponding {item}_id must be provided",
                }
                for item in missing
            ]
        )


def validate_folders(manifest: Manifest, entry_names: Iterable[str]) -> None:
    names = list(entry_names)
    missing = [
        section
        for section in FOLDER_SECTIONS
        if manifest.has_section(section) and not any(name.startswith(f"{section}/") for name in names)
    ]
    if missing:
        raise MissingRequiredFolders(missing)


def validate(manifest: Manifest, entry_names: Iterable[str], options: Optional[ImportOptions] = None) -> None:
    """
    Run the section and folder checks.

    Args:
        manifest: The parsed manifest
        entry_names: Names of the archive entries
        options: External ids supplied by the caller

    Raises:
        MissingRequiredSections: Listing every unsatisfied required section
        MissingRequiredFolders: Listing every present folder-backed section without its folder
    """
    validate_required_sections(manifest, options)
    validate_folders(manifest, entry_names)


def existing_items(manifest: Manifest) -> Dict[str, Any]:
    """Sections present in the manifest, dumped back to their JSON shape."""
    sections = ("theme", "layout", "frame", "flow", "data_template", "variant")
    return {
        section: getattr(manifest, section).model_dump(by_alias=True, exclude_none=True)
        for section in sections
        if manifest.has_section(section)
    }

"""
Tests for manifest parsing and structural validation.
"""

import pytest

from template_assets_backend.errors import (
    ManifestMalformed,
    MissingRequiredFiles,
    MissingRequiredFolders,
    MissingRequiredSections,
)
from template_assets_backend.models import ImportOptions
from template_assets_backend.validation import (
    existing_items,
    missing_sections,
    parse_manifest,
    validate,
    validate_required_files,
)

ALL_FOLDERS = ["theme/Roboto-Regular.ttf", "layout/a4.pdf", "frame/a.tex"]


class TestParseManifest:
    def test_full_manifest(self, manifest):
        parsed = parse_manifest(manifest)
        assert parsed.theme.fonts[0].font_name == "Roboto"
        assert parsed.variant.fields[1].type == "date"
        assert parsed.frame.type == "latex"

    def test_unknown_keys_are_kept(self, manifest):
        manifest["theme"]["logo"] = "logo.png"
        assert parse_manifest(manifest).theme.model_extra == {"logo": "logo.png"}

    def test_errors_name_the_field(self, manifest):
        del manifest["layout"]["slug"]
        manifest["frame"]["type"] = "word"
        with pytest.raises(ManifestMalformed) as exc_info:
            parse_manifest(manifest)
        paths = [message.split(":")[0] for message in exc_info.value.messages]
        assert "layout.slug" in paths
        assert "frame.type" in paths


class TestRequiredFiles:
    def test_all_present(self):
        validate_required_files(["manifest.json", "template.json"], "manifest.json")

    def test_reports_every_missing_file(self):
        with pytest.raises(MissingRequiredFiles) as exc_info:
            validate_required_files(["theme/a.ttf"], "manifest.json")
        assert exc_info.value.missing_files == ["template.json", "manifest.json"]


class TestSections:
    def test_missing_sections_are_aggregated(self):
        manifest = parse_manifest({"layout": {"name": "L", "slug": "l"}})
        with pytest.raises(MissingRequiredSections) as exc_info:
            validate(manifest, ["layout/l.pdf"])
        items = exc_info.value.missing_items
        assert [item["item"] for item in items] == ["theme", "flow", "variant"]
        assert items[0]["message"] == (
            "Either 'theme' must be in the ZIP or the corresponding theme_id must be provided"
        )

    def test_external_ids_satisfy_sections(self):
        manifest = parse_manifest({"data_template": {"title": "T"}})
        options = ImportOptions(theme_id="t", layout_id="l", flow_id="f", content_type_id="c")
        validate(manifest, [], options)

    def test_variant_is_satisfied_by_content_type_id(self, manifest):
        del manifest["variant"]
        parsed = parse_manifest(manifest)
        assert missing_sections(parsed) == ["variant"]
        assert missing_sections(parsed, ImportOptions(content_type_id="c")) == []

    def test_sections_are_checked_before_folders(self):
        manifest = parse_manifest({"theme": {"name": "T"}})
        with pytest.raises(MissingRequiredSections):
            validate(manifest, [])


class TestFolders:
    def test_all_folders_present(self, manifest):
        validate(parse_manifest(manifest), ALL_FOLDERS)

    def test_missing_folders_are_aggregated(self, manifest):
        with pytest.raises(MissingRequiredFolders) as exc_info:
            validate(parse_manifest(manifest), ["layout/a4.pdf"])
        assert exc_info.value.missing_folders == ["theme", "frame"]

    def test_flow_variant_and_data_template_need_no_folder(self, manifest):
        for section in ("theme", "layout", "frame"):
            del manifest[section]
        options = ImportOptions(theme_id="theme-1", layout_id="layout-1")
        validate(parse_manifest(manifest), [], options)

    def test_absent_frame_section_needs_no_folder(self, manifest):
        del manifest["frame"]
        validate(parse_manifest(manifest), ["theme/Roboto-Regular.ttf", "layout/a4.pdf"])


class TestExistingItems:
    def test_dumps_present_sections_with_aliases(self, manifest):
        del manifest["frame"]
        items = existing_items(parse_manifest(manifest))
        assert set(items) == {"theme", "layout", "flow", "variant", "data_template"}
        assert items["theme"]["fonts"][0]["fontName"] == "Roboto"

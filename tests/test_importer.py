"""
Tests for the import orchestrator, the entity preparers and the template
asset service.
"""

import json
import logging
import time
from pathlib import Path
from unittest.mock import MagicMock

import httpx
import pytest

from template_assets_backend import importer
from template_assets_backend.configuration import make_runtime_config
from template_assets_backend.database import Database
from template_assets_backend.entities import (
    create_content_type,
    create_theme,
    engine_table,
    field_type_table,
    get_content_type,
    get_flow,
    get_layout,
)
from template_assets_backend.errors import (
    ArchiveDownloadFailed,
    EntityCreationFailed,
    InvalidDocumentError,
    MissingRequiredFiles,
    MissingRequiredFolders,
    MissingRequiredSections,
    NotFound,
    StorageError,
)
from template_assets_backend.importer import TemplateAssetService, format_opts
from template_assets_backend.models import ImportOptions, ThemeSection
from template_assets_backend.preparers import font_entries, theme_attrs
from template_assets_backend.storage import LocalStorage, S3Storage

ENTITY_TABLES = ("themes", "flows", "frames", "layouts", "content_types", "data_templates", "assets")


def count_rows(database, table):
    with database.connection() as conn:
        return conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]


def stored_files(storage):
    return sorted(path for path in storage.root.rglob("*") if path.is_file())


class FailingStorage(LocalStorage):
    """Local storage that refuses keys ending in one of ``failing``, or stalls on ``delays``."""

    def __init__(self, root, failing=(), delay=0.0, delays=None):
        super().__init__(root)
        self.failing = tuple(failing)
        self.delay = delay
        self.delays = delays or {}

    def put(self, key, data, content_type="application/octet-stream"):
        for suffix, seconds in self.delays.items():
            if key.endswith(suffix):
                time.sleep(seconds)
        if key.endswith(self.failing):
            if self.delay:
                time.sleep(self.delay)
            else:
                raise StorageError(f"refusing {key}")
        return super().put(key, data, content_type)


class TestFullImport:
    def test_creates_every_entity(self, service, database, user, bundle):
        result = service.import_template(user, bundle)

        assert list(result) == ["theme", "flow", "frame", "layout", "variant", "data_template"]
        theme = result["theme"]
        assert theme.name == "Corporate"
        assert theme.font == "Roboto"
        assert theme.primary_color == "#112233"
        assert theme.body_color == "#000000"
        assert len(theme.assets) == 2

        with database.connection() as conn:
            flow = get_flow(conn, result["flow"].id, user.organisation_id)
            layout = get_layout(conn, result["layout"].id, user.organisation_id)
            content_type = get_content_type(conn, result["variant"].id, user.organisation_id)
            pandoc_id = engine_table(conn)["Pandoc"]

        assert [(state.state, state.order) for state in flow.states] == [("Draft", 1), ("Publish", 2)]
        assert layout.engine_id == pandoc_id
        assert layout.frame_id == result["frame"].id
        assert layout.asset_id is not None
        assert (layout.width, layout.height, layout.unit) == (40, 40, "cm")
        assert layout.meta == {"margins": "2cm"}

        assert content_type.theme_id == theme.id
        assert content_type.layout_id == layout.id
        assert content_type.flow_id == flow.id
        assert [(f.name, f.field_type) for f in content_type.fields] == [("employee", "String"), ("start_date", "Date")]

        data_template = result["data_template"]
        assert data_template.content_type_id == content_type.id
        assert data_template.data == "# Offer\n\nDear [employee]"
        assert json.loads(data_template.serialized["data"])["type"] == "doc"

    def test_writes_frame_template_to_slug_directory(self, service, user, bundle, importer_settings):
        result = service.import_template(user, bundle)
        slug_dir = Path(importer_settings.slugs_root) / "organisation" / user.organisation_id
        frame_file = slug_dir / result["frame"].name / "template.tex"
        assert frame_file.read_bytes() == b"\\documentclass{article}"

    def test_assets_are_stored(self, service, storage, user, bundle):
        service.import_template(user, bundle)
        names = sorted(path.name for path in stored_files(storage))
        assert names == ["Roboto-Bold.ttf", "Roboto-Regular.ttf", "a4-letter.pdf", "letterhead.tex"]

    def test_template_json_may_hold_the_tree_directly(self, service, user, make_bundle):
        document = {"type": "doc", "content": [{"type": "paragraph", "content": [{"type": "text", "text": "Hi"}]}]}
        archive = make_bundle(files={"template.json": json.dumps({"data": document}).encode()})
        result = service.import_template(user, archive)
        assert result["data_template"].data == "Hi"
        assert json.loads(result["data_template"].serialized["data"]) == document


class TestNameCollisions:
    def test_second_import_renames_everything(self, service, user, bundle):
        service.import_template(user, bundle)
        result = service.import_template(user, bundle)

        assert result["theme"].name == "Corporate 2"
        assert result["flow"].name == "Review 2"
        assert result["frame"].name == "Letterhead 2"
        assert result["layout"].name == "A4 Letter 2"
        assert result["variant"].name == "Offer Letter 2"
        assert result["data_template"].title == "Standard Offer 2"

    def test_other_organisation_keeps_names(self, service, user, other_user, bundle):
        service.import_template(user, bundle)
        result = service.import_template(other_user, bundle)
        assert result["theme"].name == "Corporate"
        assert result["variant"].name == "Offer Letter"


class TestAtomicity:
    def test_failed_variant_rolls_back_earlier_steps(self, service, database, storage, user, manifest, make_bundle):
        manifest["variant"]["fields"].append({"name": "photo", "type": "hologram"})

        with pytest.raises(EntityCreationFailed) as exc_info:
            service.import_template(user, make_bundle(manifest=manifest))

        assert exc_info.value.entity == "content_type"
        assert "fields[2].field_type_id: can't be blank" in exc_info.value.errors
        for table in ENTITY_TABLES:
            assert count_rows(database, table) == 0, table
        assert stored_files(storage) == []

    def test_failed_import_removes_frame_file(self, service, user, manifest, make_bundle, importer_settings):
        manifest["variant"]["prefix"] = ""
        with pytest.raises(EntityCreationFailed):
            service.import_template(user, make_bundle(manifest=manifest))
        slug_dir = Path(importer_settings.slugs_root)
        assert not any(path.is_file() for path in slug_dir.rglob("*"))

    def test_invalid_document_rolls_back(self, service, database, user, make_bundle):
        archive = make_bundle(template={"type": "doc", "content": [{"type": "mention"}]})
        with pytest.raises(InvalidDocumentError):
            service.import_template(user, archive)
        assert count_rows(database, "content_types") == 0

    def test_validation_errors_create_nothing(self, service, database, user, make_bundle):
        with pytest.raises(MissingRequiredFolders):
            service.import_template(user, make_bundle(drop=["layout/a4-letter.pdf"]))
        assert count_rows(database, "themes") == 0


class TestFonts:
    def test_font_entries_only_match_known_styles(self):
        names = [
            "theme/Roboto-Regular.ttf",
            "theme/Roboto-BoldItalic.otf",
            "theme/Roboto-Light.ttf",
            "theme/readme.txt",
            "layout/Roboto-Regular.ttf",
        ]
        assert font_entries(names) == ["theme/Roboto-Regular.ttf", "theme/Roboto-BoldItalic.otf"]

    def test_failing_font_is_skipped(self, database, importer_settings, tmp_path, user, bundle, caplog):
        storage = FailingStorage(tmp_path / "flaky", failing=("Roboto-Bold.ttf",))
        service = TemplateAssetService(database, storage, importer_settings)

        with caplog.at_level(logging.ERROR):
            result = service.import_template(user, bundle)

        assert len(result["theme"].assets) == 1
        assert "Failed to create theme asset theme/Roboto-Bold.ttf" in caplog.text

    def test_slow_font_times_out(self, database, tmp_path, user, bundle, caplog):
        settings = make_runtime_config({"app": {"data_dir": str(tmp_path)}, "importer": {"font_timeout": 0.05}})
        storage = FailingStorage(tmp_path / "slow", failing=("Roboto-Bold.ttf",), delay=0.5)
        service = TemplateAssetService(database, storage, settings.importer)

        with caplog.at_level(logging.ERROR):
            result = service.import_template(user, bundle)

        assert len(result["theme"].assets) == 1
        assert "timed out" in caplog.text

    def test_timeout_counts_from_each_upload_start(self, database, tmp_path, user, bundle, caplog):
        # Regular comes first in the archive and finishes in time; Bold runs
        # alongside it and overruns its own deadline.
        settings = make_runtime_config({"app": {"data_dir": str(tmp_path)}, "importer": {"font_timeout": 1.0}})
        storage = FailingStorage(tmp_path / "staggered", delays={"Roboto-Regular.ttf": 0.8, "Roboto-Bold.ttf": 1.4})
        service = TemplateAssetService(database, storage, settings.importer)

        with caplog.at_level(logging.ERROR):
            result = service.import_template(user, bundle)

        assert len(result["theme"].assets) == 1
        assert "Failed to create theme asset theme/Roboto-Bold.ttf: timed out" in caplog.text
        assert "Roboto-Regular.ttf" not in caplog.text

    def test_font_family_strips_separators(self):
        section = ThemeSection(name="Brand", fonts=[{"fontName": "Open Sans-Regular.ttf"}])
        assert theme_attrs(section, "")["font"] == "OpenSansRegular"

    def test_font_family_falls_back_to_theme_name(self):
        section = ThemeSection(name="Brand Book")
        assert theme_attrs(section, "a,b") == {
            "name": "Brand Book",
            "font": "BrandBook",
            "primary_color": None,
            "secondary_color": None,
            "body_color": None,
            "assets": "a,b",
        }


class TestFrameDirectory:
    @pytest.mark.parametrize("name", ["../../../../escaped", "nested/frame", ".."])
    def test_name_must_stay_inside_organisation_directory(
        self, service, database, storage, user, manifest, make_bundle, importer_settings, name
    ):
        manifest["frame"]["name"] = name
        org_root = Path(importer_settings.slugs_root) / "organisation" / user.organisation_id

        with pytest.raises(EntityCreationFailed) as exc_info:
            service.import_template(user, make_bundle(manifest=manifest))

        assert exc_info.value.entity == "frame"
        assert not (org_root / name / "template.tex").resolve().exists()
        assert count_rows(database, "frames") == 0
        assert stored_files(storage) == []

    def test_frame_file_lands_under_slugs_root(self, service, user, bundle, importer_settings):
        result = service.import_template(user, bundle)
        org_root = (Path(importer_settings.slugs_root) / "organisation" / user.organisation_id).resolve()
        assert (org_root / result["frame"].name / "template.tex").is_file()


class TestLayout:
    def test_unknown_engine_is_logged_and_left_empty(self, service, user, manifest, make_bundle, caplog):
        manifest["layout"]["engine"] = "word/docx"
        with caplog.at_level(logging.WARNING):
            result = service.import_template(user, make_bundle(manifest=manifest))
        assert result["layout"].engine_id is None
        assert "No engine found with the name Word" in caplog.text

    def test_engine_match_ignores_case(self, service, database, user, manifest, make_bundle):
        manifest["layout"]["engine"] = "PANDOC + TYPST/typst"
        result = service.import_template(user, make_bundle(manifest=manifest))
        with database.connection() as conn:
            assert result["layout"].engine_id == engine_table(conn)["Pandoc + Typst"]

    def test_layout_needs_exactly_one_pdf(self, service, user, make_bundle):
        archive = make_bundle(files={"layout/second.pdf": b"%PDF"})
        with pytest.raises(EntityCreationFailed) as exc_info:
            service.import_template(user, archive)
        assert exc_info.value.entity == "layout"

    def test_frame_needs_a_tex_file(self, service, user, make_bundle):
        archive = make_bundle(files={"frame/readme.md": b"#"}, drop=["frame/letterhead.tex"])
        with pytest.raises(EntityCreationFailed) as exc_info:
            service.import_template(user, archive)
        assert exc_info.value.entity == "frame"

    def test_layout_asset_failure_is_not_fatal(self, database, importer_settings, tmp_path, user, bundle):
        storage = FailingStorage(tmp_path / "flaky", failing=("a4-letter.pdf",))
        service = TemplateAssetService(database, storage, importer_settings)
        result = service.import_template(user, bundle)
        assert result["layout"].asset_id is None


class TestExternalIds:
    def _existing(self, database, user):
        with database.transaction() as conn:
            theme = create_theme(conn, user, {"name": "Existing"})
            content_type = create_content_type(conn, user, {"name": "Existing Type", "prefix": "EXT"})
        return theme, content_type

    def test_theme_id_replaces_theme_section(self, service, database, user, manifest, make_bundle):
        theme, _ = self._existing(database, user)
        del manifest["theme"]
        archive = make_bundle(manifest=manifest, drop=["theme/Roboto-Regular.ttf", "theme/Roboto-Bold.ttf"])

        result = service.import_template(user, archive, ImportOptions(theme_id=theme.id))

        assert "theme" not in result
        assert result["variant"].theme_id == theme.id

    def test_missing_section_without_id_fails(self, service, user, manifest, make_bundle):
        del manifest["flow"]
        with pytest.raises(MissingRequiredSections):
            service.import_template(user, make_bundle(manifest=manifest))

    def test_data_template_uses_content_type_id(self, service, database, user, manifest, make_bundle):
        _, content_type = self._existing(database, user)
        del manifest["variant"]
        result = service.import_template(
            user, make_bundle(manifest=manifest), ImportOptions(content_type_id=content_type.id)
        )
        assert "variant" not in result
        assert result["data_template"].content_type_id == content_type.id

    def test_ids_of_another_organisation_are_rejected(self, service, database, user, other_user, make_bundle):
        theme, _ = self._existing(database, other_user)
        with pytest.raises(EntityCreationFailed) as exc_info:
            service.import_template(user, make_bundle(), ImportOptions(theme_id=theme.id))
        assert exc_info.value.entity == "theme"
        assert count_rows(database, "flows") == 0

    def test_format_opts_drops_empty_values(self):
        options = format_opts({"theme_id": "t", "layout_id": None, "flow_id": "", "unrelated": "x"})
        assert options == ImportOptions(theme_id="t")


class TestTemplateAssetService:
    def test_create_stores_archive_and_record(self, service, storage, user, bundle):
        template_asset = service.create_template_asset(
            user, name=None, description="Offer pack", file_name="offer.zip", zip_bytes=bundle
        )
        assert template_asset.name == "offer"
        assert template_asset.storage_key.endswith("/template_offer.zip")
        assert "layout/a4-letter.pdf" in template_asset.file_entries
        assert template_asset.manifest["theme"]["name"] == "Corporate"
        assert storage.get(template_asset.storage_key) == bundle

    def test_create_rejects_archive_without_template_json(self, service, storage, user, make_bundle):
        with pytest.raises(MissingRequiredFiles):
            service.create_template_asset(
                user, name="x", description=None, file_name="x.zip", zip_bytes=make_bundle(drop=["template.json"])
            )
        assert stored_files(storage) == []

    def test_list_get_update_delete(self, service, storage, user, other_user, bundle):
        template_asset = service.create_template_asset(
            user, name="Offer", description=None, file_name="offer.zip", zip_bytes=bundle
        )
        assert [t.id for t in service.list_template_assets(user)] == [template_asset.id]
        assert service.list_template_assets(other_user) == []
        with pytest.raises(NotFound):
            service.get_template_asset(template_asset.id, other_user)

        updated = service.update_template_asset(template_asset, {"description": "Updated"})
        assert service.get_template_asset(template_asset.id, user).description == "Updated"
        assert updated.name == "Offer"

        service.delete_template_asset(template_asset)
        with pytest.raises(NotFound):
            service.get_template_asset(template_asset.id, user)
        assert stored_files(storage) == []

    def test_import_stored_template_asset(self, service, user, bundle):
        template_asset = service.create_template_asset(
            user, name="Offer", description=None, file_name="offer.zip", zip_bytes=bundle
        )
        result = service.import_template_asset(user, template_asset.id)
        assert result["theme"].name == "Corporate"

    def test_pre_import_lists_existing_and_missing(self, service, manifest, make_bundle):
        del manifest["variant"]
        del manifest["frame"]
        report = service.pre_import_template(make_bundle(manifest=manifest))
        assert set(report["existing_items"]) == {"theme", "layout", "flow", "data_template"}
        assert report["missing_items"] == ["variant"]


class TestPublicTemplates:
    def publish(self, service, bundle, file_name="Offer Letter.zip", name="Offer letter"):
        return service.publish_template_asset(name=name, description="Shared", file_name=file_name, zip_bytes=bundle)

    def test_publish_stores_under_public_prefix(self, service, storage, bundle):
        template_asset = self.publish(service, bundle)
        assert template_asset.is_public
        assert template_asset.storage_key == "public/templates/Offer Letter/Offer Letter.zip"
        assert storage.get(template_asset.storage_key) == bundle

    def test_publishing_the_same_name_twice_is_rejected(self, service, bundle):
        self.publish(service, bundle)
        with pytest.raises(EntityCreationFailed) as exc_info:
            self.publish(service, bundle, name="Again")
        assert "already exists" in exc_info.value.errors[0]

    def test_index_is_newest_first_with_urls(self, service, user, bundle):
        older = self.publish(service, bundle, file_name="older.zip", name="Older")
        newer = self.publish(service, bundle, file_name="newer.zip", name="Newer")
        service.create_template_asset(user, name="Private", description=None, file_name="own.zip", zip_bytes=bundle)

        index = service.public_template_asset_index()

        assert [item["id"] for item in index] == [newer.id, older.id]
        assert index[0]["file_name"] == "newer"
        assert index[0]["file_size"] == len(bundle)
        assert index[0]["zip_file_url"].endswith("public/templates/newer/newer.zip")
        assert index[0]["thumbnail_url"].endswith("public/templates/newer/thumbnail.png")

    def test_signed_urls_use_configured_expiration(self, database, importer_settings, bundle):
        client = MagicMock()
        client.generate_presigned_url.return_value = "https://signed"
        service = TemplateAssetService(
            database, S3Storage("bucket", client=client), importer_settings, signed_url_expiration=120
        )
        self.publish(service, bundle, file_name="offer.zip")

        assert service.download_public_template("offer") == "https://signed"
        client.generate_presigned_url.assert_called_with(
            "get_object", Params={"Bucket": "bucket", "Key": "public/templates/offer/offer.zip"}, ExpiresIn=120
        )

    @pytest.mark.parametrize("template_name", ["missing", "..", ""])
    def test_download_unknown_public_template(self, service, template_name):
        with pytest.raises(NotFound):
            service.download_public_template(template_name)

    def test_public_template_can_be_imported_by_any_organisation(self, service, user, other_user, bundle):
        template_asset = self.publish(service, bundle)
        assert service.import_template_asset(user, template_asset.id)["theme"].name == "Corporate"
        assert service.import_template_asset(other_user, template_asset.id)["theme"].name == "Corporate"
        with pytest.raises(NotFound):
            service.get_template_asset(template_asset.id, user)


class TestFetchZipFromUrl:
    def test_downloads_archive(self, service, monkeypatch, bundle):
        def fake_get(url, **kwargs):
            assert kwargs["follow_redirects"] is True
            return httpx.Response(200, content=bundle, request=httpx.Request("GET", url))

        monkeypatch.setattr(importer.httpx, "get", fake_get)
        file_name, content = service.fetch_zip_from_url("https://cdn.example.com/packs/offer.zip?sig=1")
        assert file_name == "offer.zip"
        assert content == bundle

    def test_non_200_fails(self, service, monkeypatch):
        monkeypatch.setattr(
            importer.httpx, "get", lambda url, **kwargs: httpx.Response(404, request=httpx.Request("GET", url))
        )
        with pytest.raises(ArchiveDownloadFailed, match="404"):
            service.fetch_zip_from_url("https://cdn.example.com/missing.zip")

    def test_transport_error_fails(self, service, monkeypatch):
        def fake_get(url, **kwargs):
            raise httpx.ConnectError("connection refused")

        monkeypatch.setattr(importer.httpx, "get", fake_get)
        with pytest.raises(ArchiveDownloadFailed, match="HTTP request failed"):
            service.fetch_zip_from_url("https://cdn.example.com/offer.zip")


def test_reference_tables_are_seeded(database):
    with database.connection() as conn:
        assert set(engine_table(conn)) == {"Pandoc", "Pandoc + Typst", "Latex"}
        assert "Table" in field_type_table(conn)
    Database(database.db_path)
    with database.connection() as conn:
        assert len(engine_table(conn)) == 3

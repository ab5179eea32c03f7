"""
Tests for the storage backends and configuration loading.
"""

from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError
from omegaconf.errors import ConfigKeyError

from template_assets_backend.configuration import make_runtime_config
from template_assets_backend.errors import StorageError
from template_assets_backend.storage import LocalStorage, S3Storage, asset_key, build_storage, template_asset_key


class TestLocalStorage:
    def test_put_get_delete(self, tmp_path):
        storage = LocalStorage(tmp_path)
        storage.put("organisations/o/assets/a/font.ttf", b"data")
        assert storage.get("organisations/o/assets/a/font.ttf") == b"data"
        storage.delete("organisations/o/assets/a/font.ttf")
        with pytest.raises(StorageError):
            storage.get("organisations/o/assets/a/font.ttf")

    @pytest.mark.parametrize("key", ["", "/etc/passwd", "a/../../b"])
    def test_rejects_unsafe_keys(self, tmp_path, key):
        with pytest.raises(StorageError):
            LocalStorage(tmp_path).put(key, b"x")

    def test_signed_url_is_a_file_uri(self, tmp_path):
        storage = LocalStorage(tmp_path)
        storage.put("a/b.zip", b"x")
        assert storage.signed_url("a/b.zip").startswith("file://")


class TestS3Storage:
    def test_put_uses_prefix_and_content_type(self):
        client = MagicMock()
        storage = S3Storage("bucket", prefix="/tenants/", client=client)
        storage.put("a/b.pdf", b"pdf", "application/pdf")
        client.put_object.assert_called_once_with(
            Bucket="bucket", Key="tenants/a/b.pdf", Body=b"pdf", ContentType="application/pdf"
        )

    def test_get_reads_body(self):
        client = MagicMock()
        client.get_object.return_value = {"Body": MagicMock(read=MagicMock(return_value=b"zip"))}
        assert S3Storage("bucket", client=client).get("a.zip") == b"zip"

    def test_client_errors_become_storage_errors(self):
        client = MagicMock()
        client.delete_object.side_effect = ClientError({"Error": {"Code": "AccessDenied"}}, "DeleteObject")
        with pytest.raises(StorageError, match="Failed to delete"):
            S3Storage("bucket", client=client).delete("a.zip")

    def test_bucket_is_required(self):
        with pytest.raises(StorageError):
            S3Storage("")


class TestBuildStorage:
    def test_local_backend(self, settings, tmp_path):
        storage = build_storage(settings)
        assert isinstance(storage, LocalStorage)
        assert storage.root == tmp_path / "storage"

    def test_s3_backend(self, tmp_path):
        settings = make_runtime_config({"storage": {"backend": "s3", "bucket": "assets"}})
        storage = build_storage(settings, client=MagicMock())
        assert isinstance(storage, S3Storage)
        assert storage.bucket == "assets"

    def test_unknown_backend(self):
        with pytest.raises(StorageError):
            build_storage(make_runtime_config({"storage": {"backend": "ftp"}}))


def test_keys():
    assert template_asset_key("o", "t", "offer.zip") == "organisations/o/template_assets/t/template_offer.zip"
    assert asset_key("o", "a", "font.ttf") == "organisations/o/assets/a/font.ttf"


class TestConfiguration:
    def test_data_dir_override_flows_into_paths(self, tmp_path):
        settings = make_runtime_config({"app": {"data_dir": str(tmp_path)}})
        assert settings.database.path == f"{tmp_path}/template_assets.db"
        assert settings.importer.slugs_root == f"{tmp_path}/slugs"

    def test_unknown_keys_are_rejected(self):
        with pytest.raises(ConfigKeyError):
            make_runtime_config({"importer": {"font_threads": 8}})

    def test_importer_defaults(self):
        importer = make_runtime_config().importer
        assert importer.manifest_name == "manifest.json"
        assert importer.max_name_attempts == 1000
        assert dict(importer.layout_defaults) == {"width": 40, "height": 40, "unit": "cm"}

"""Tests for the object storage adapter (local and S3 backends)."""

import asyncio
from unittest.mock import MagicMock, patch

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

from app.errors import StorageUploadError
from app.storage import (
    LocalObjectStorage,
    S3ObjectStorage,
    UploadResult,
    create_storage,
    object_key,
)


class TestObjectKey:
    """Tests for folder/filename key joining."""

    def test_strips_slashes(self):
        assert object_key("/music-files", "music-1.mp3") == "music-files/music-1.mp3"
        assert object_key("/music-images/", "x.png") == "music-images/x.png"

    def test_empty_folder(self):
        assert object_key("", "x.png") == "x.png"


class TestLocalObjectStorage:
    """Tests for the filesystem backend."""

    def test_upload_writes_file_and_returns_url(self, tmp_path):
        storage = LocalObjectStorage(tmp_path, public_base_url="https://cdn.test/")

        result = asyncio.run(storage.upload(b"audio", "music-1.mp3", "/music-files"))

        assert result == UploadResult(
            url="https://cdn.test/music-files/music-1.mp3",
            provider_id="music-files/music-1.mp3",
        )
        assert (tmp_path / "music-files" / "music-1.mp3").read_bytes() == b"audio"

    def test_file_uri_without_base_url(self, tmp_path):
        storage = LocalObjectStorage(tmp_path)

        result = asyncio.run(storage.upload(b"img", "cover.png", "/music-images"))

        assert result.url.startswith("file://")
        assert result.url.endswith("/music-images/cover.png")

    def test_empty_content_rejected(self, tmp_path):
        storage = LocalObjectStorage(tmp_path)
        with pytest.raises(StorageUploadError, match="empty content"):
            asyncio.run(storage.upload(b"", "a.mp3", "/music-files"))

    def test_write_failure_is_storage_error(self, tmp_path):
        storage = LocalObjectStorage(tmp_path)
        with patch("app.storage.atomic_write_bytes", side_effect=PermissionError("read-only")):
            with pytest.raises(StorageUploadError) as exc_info:
                asyncio.run(storage.upload(b"a", "a.mp3", "/music-files"))
        assert exc_info.value.retryable is True


class TestS3ObjectStorage:
    """Tests for the boto3 backend with a mocked client."""

    def test_put_object_called_with_key_and_body(self):
        client = MagicMock()
        client.put_object.return_value = {"ETag": '"abc"', "VersionId": "v1"}
        storage = S3ObjectStorage("media-bucket", client=client, region="eu-west-1")

        result = asyncio.run(storage.upload(b"audio-bytes", "music-1.mp3", "/music-files"))

        kwargs = client.put_object.call_args.kwargs
        assert kwargs["Bucket"] == "media-bucket"
        assert kwargs["Key"] == "music-files/music-1.mp3"
        assert kwargs["Body"].read() == b"audio-bytes"
        assert kwargs["ContentType"] == "audio/mpeg"
        assert result.url == "https://media-bucket.s3.eu-west-1.amazonaws.com/music-files/music-1.mp3"
        assert result.provider_id == "v1"

    def test_provider_id_falls_back_to_key(self):
        client = MagicMock()
        client.put_object.return_value = {"ETag": '"abc"'}
        storage = S3ObjectStorage("b", client=client, public_base_url="https://cdn.test")

        result = asyncio.run(storage.upload(b"x", "cover.png", "/music-images"))

        assert result.provider_id == "music-images/cover.png"
        assert result.url == "https://cdn.test/music-images/cover.png"

    def test_client_error_is_storage_error(self):
        client = MagicMock()
        client.put_object.side_effect = ClientError(
            {"Error": {"Code": "SlowDown", "Message": "Reduce your request rate"}}, "PutObject"
        )
        storage = S3ObjectStorage("b", client=client)

        with pytest.raises(StorageUploadError) as exc_info:
            asyncio.run(storage.upload(b"x", "a.mp3", "/music-files"))

        assert exc_info.value.retryable is True
        assert "SlowDown" in exc_info.value.message

    def test_network_error_is_storage_error(self):
        client = MagicMock()
        client.put_object.side_effect = EndpointConnectionError(endpoint_url="https://s3.test")
        storage = S3ObjectStorage("b", client=client)

        with pytest.raises(StorageUploadError):
            asyncio.run(storage.upload(b"x", "a.mp3", "/music-files"))

    def test_missing_bucket_rejected(self):
        with pytest.raises(ValueError):
            S3ObjectStorage("", client=MagicMock())


class TestCreateStorage:
    """Tests for backend selection."""

    def test_local_backend(self):
        assert isinstance(create_storage("local"), LocalObjectStorage)

    def test_s3_backend(self):
        with (
            patch("app.storage.S3_BUCKET_NAME", "media-bucket"),
            patch("app.storage.boto3.client", return_value=MagicMock()) as client_factory,
        ):
            storage = create_storage("s3")

        assert isinstance(storage, S3ObjectStorage)
        assert storage.bucket == "media-bucket"
        client_factory.assert_called_once()

    def test_unknown_backend(self):
        with pytest.raises(ValueError):
            create_storage("ftp")

"""Tests for the job producer: validation, payload encoding, enqueue."""

import base64
import time
from unittest.mock import MagicMock

import pytest

from app.config import MAX_UPLOAD_BYTES
from app.errors import PayloadDecodeError, ValidationError
from app.models import JOB_WAITING
from app.producer import (
    SubmittedFile,
    build_job_request,
    decode_payload,
    encode_payload,
    submit,
    validate_submission,
)
from app.utils.hashing import sha256_bytes

MP3_BYTES = b"ID3\x04\x00\x00\x00\x00\x00\x00" + b"\x00" * 1024
PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 256


class TestValidateSubmission:
    """Tests for submission preconditions."""

    def test_valid_submission_returns_stripped_title(self, music_file, image_file):
        assert validate_submission("  Track One  ", music_file, image_file, "user-1") == "Track One"

    def test_missing_music_file(self, image_file):
        with pytest.raises(ValidationError) as exc_info:
            validate_submission("t", None, image_file, "user-1")
        assert exc_info.value.field == "music"
        assert exc_info.value.retryable is False

    def test_missing_image_file(self, music_file):
        with pytest.raises(ValidationError) as exc_info:
            validate_submission("t", music_file, None, "user-1")
        assert exc_info.value.field == "image"

    def test_empty_file_counts_as_missing(self, image_file):
        empty = SubmittedFile("a.mp3", "audio/mpeg", b"")
        with pytest.raises(ValidationError, match="required"):
            validate_submission("t", empty, image_file, "user-1")

    def test_blank_title(self, music_file, image_file):
        with pytest.raises(ValidationError) as exc_info:
            validate_submission("   ", music_file, image_file, "user-1")
        assert exc_info.value.field == "title"

    def test_missing_owner(self, music_file, image_file):
        with pytest.raises(ValidationError) as exc_info:
            validate_submission("t", music_file, image_file, "")
        assert exc_info.value.field == "ownerId"

    @pytest.mark.parametrize("content_type", ["audio/mpeg", "audio/wav", "audio/mp3"])
    def test_accepted_audio_types(self, content_type, image_file):
        music = SubmittedFile("a", content_type, MP3_BYTES)
        validate_submission("t", music, image_file, "user-1")

    @pytest.mark.parametrize("content_type", ["image/jpeg", "image/png", "image/webp"])
    def test_accepted_image_types(self, content_type, music_file):
        image = SubmittedFile("a", content_type, PNG_BYTES)
        validate_submission("t", music_file, image, "user-1")

    def test_rejected_audio_type(self, image_file):
        music = SubmittedFile("a.ogg", "audio/ogg", MP3_BYTES)
        with pytest.raises(ValidationError, match="Invalid file type: audio/ogg"):
            validate_submission("t", music, image_file, "user-1")

    def test_rejected_image_type(self, music_file):
        image = SubmittedFile("a.gif", "image/gif", PNG_BYTES)
        with pytest.raises(ValidationError, match="Invalid file type: image/gif"):
            validate_submission("t", music_file, image, "user-1")

    def test_content_type_parameters_ignored(self, image_file):
        """Charset-style parameters do not defeat the MIME check."""
        music = SubmittedFile("a.mp3", "Audio/MPEG; charset=binary", MP3_BYTES)
        validate_submission("t", music, image_file, "user-1")

    def test_oversize_declared_size_rejected(self, image_file):
        """Size limit uses the size reported by the HTTP edge."""
        music = SubmittedFile("a.mp3", "audio/mpeg", MP3_BYTES, declared_size=MAX_UPLOAD_BYTES + 1)
        with pytest.raises(ValidationError, match="50MB"):
            validate_submission("t", music, image_file, "user-1")

    def test_oversize_content_rejected(self, music_file):
        image = SubmittedFile("a.png", "image/png", b"\x00" * (MAX_UPLOAD_BYTES + 1))
        with pytest.raises(ValidationError) as exc_info:
            validate_submission("t", music_file, image, "user-1")
        assert exc_info.value.field == "image"

    def test_exactly_at_limit_accepted(self, image_file):
        music = SubmittedFile("a.mp3", "audio/mpeg", MP3_BYTES, declared_size=MAX_UPLOAD_BYTES)
        validate_submission("t", music, image_file, "user-1")


class TestPayloadEncoding:
    """Tests for encode_payload / decode_payload."""

    def test_encode_produces_base64_and_hashes(self, music_file, image_file):
        payload = encode_payload("Track", music_file, image_file, "user-1", "A1")

        assert base64.b64decode(payload["primaryContent"]) == music_file.content
        assert base64.b64decode(payload["secondaryContent"]) == image_file.content
        assert payload["primarySha256"] == sha256_bytes(music_file.content)
        assert payload["secondarySha256"] == sha256_bytes(image_file.content)
        assert payload["primaryFilename"] == "Track One.MP3"
        assert payload["parentCollectionId"] == "A1"

    def test_decode_restores_bytes_and_metadata(self, music_file, image_file):
        decoded = decode_payload(encode_payload("Track", music_file, image_file, "user-1"))

        assert decoded.primary_content == music_file.content
        assert decoded.secondary_content == image_file.content
        assert decoded.owner_id == "user-1"
        assert decoded.title == "Track"
        assert decoded.parent_collection_id is None

    def test_decode_rejects_invalid_base64(self, music_file, image_file):
        payload = encode_payload("Track", music_file, image_file, "user-1")
        payload["primaryContent"] = "not base64!!"

        with pytest.raises(PayloadDecodeError) as exc_info:
            decode_payload(payload)
        assert exc_info.value.retryable is False

    def test_decode_rejects_hash_mismatch(self, music_file, image_file):
        payload = encode_payload("Track", music_file, image_file, "user-1")
        payload["secondaryContent"] = base64.b64encode(b"tampered").decode("ascii")

        with pytest.raises(PayloadDecodeError, match="secondarySha256"):
            decode_payload(payload)

    def test_decode_rejects_missing_fields(self, music_file, image_file):
        payload = encode_payload("Track", music_file, image_file, "user-1")
        del payload["ownerId"]

        with pytest.raises(PayloadDecodeError, match="ownerId"):
            decode_payload(payload)

    def test_decode_without_hashes_computes_them(self):
        """Payloads from producers that omit hashes still decode."""
        payload = {
            "primaryContent": base64.b64encode(MP3_BYTES).decode(),
            "primaryFilename": "a.mp3",
            "secondaryContent": base64.b64encode(PNG_BYTES).decode(),
            "secondaryFilename": "a.png",
            "ownerId": "user-1",
            "title": "t",
        }
        decoded = decode_payload(payload)
        assert decoded.primary_sha256 == sha256_bytes(MP3_BYTES)

    def test_build_job_request_defaults(self, music_file, image_file):
        request = build_job_request("Track", music_file, image_file, "user-1")

        assert request["name"] == "uploadMusicJob"
        assert request["options"] == {"attempts": 3, "priority": 1}


class TestSubmit:
    """Tests for submit()."""

    def test_submit_enqueues_and_returns_job_id(self, queue, music_file, image_file):
        job_id = submit(queue, "Track", music_file, image_file, "user-1", "A1")

        job = queue.get(job_id)
        assert job.state == JOB_WAITING
        assert job.name == "uploadMusicJob"
        assert job.attempts_max == 3
        assert job.priority == 1

    def test_submit_returns_without_waiting_on_pipeline(self, queue, music_file, image_file):
        """Nothing downstream runs inside submit: no claim, no attempt."""
        start = time.monotonic()
        job_id = submit(queue, "Track", music_file, image_file, "user-1")
        elapsed = time.monotonic() - start

        job = queue.get(job_id)
        assert job.state == JOB_WAITING
        assert job.attempts_made == 0
        assert elapsed < 5

    def test_invalid_submission_enqueues_nothing(self, music_file):
        queue = MagicMock()
        bad_image = SubmittedFile("a.gif", "image/gif", PNG_BYTES)

        with pytest.raises(ValidationError):
            submit(queue, "Track", music_file, bad_image, "user-1")
        queue.enqueue.assert_not_called()

    def test_submit_passes_options(self, music_file, image_file):
        queue = MagicMock()
        queue.enqueue.return_value = "job-1"

        assert submit(queue, "Track", music_file, image_file, "u", attempts=5, priority=9) == "job-1"
        _, kwargs = queue.enqueue.call_args
        assert kwargs == {"attempts": 5, "priority": 9}

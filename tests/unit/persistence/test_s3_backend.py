"""Unit tests for S3FileStore using moto."""

from __future__ import annotations

import boto3
import pytest
from moto import mock_aws

from collision_sync.core.exceptions import FileStoreError
from collision_sync.persistence.s3_backend import S3FileStore, guess_content_type

BUCKET = "test-estimate-files"
REGION = "us-east-1"


@pytest.fixture
def s3_client():
    with mock_aws():
        client = boto3.client("s3", region_name=REGION)
        client.create_bucket(Bucket=BUCKET)
        yield client


@pytest.fixture
def s3_backend(s3_client):
    return S3FileStore(bucket=BUCKET, region=REGION)


class TestWrite:
    def test_write_returns_path(self, s3_backend):
        assert s3_backend.write("inbox/claim.xml", b"<Estimate/>") == "inbox/claim.xml"

    def test_content_type_is_guessed(self, s3_backend, s3_client):
        s3_backend.write("inbox/claim.ems", b"HDR|2.6")
        head = s3_client.head_object(Bucket=BUCKET, Key="inbox/claim.ems")
        assert head["ContentType"] == "text/plain"

    def test_explicit_content_type_wins(self, s3_backend, s3_client):
        s3_backend.write("failed/a.xml.error.txt", b"boom", content_type="text/plain")
        head = s3_client.head_object(Bucket=BUCKET, Key="failed/a.xml.error.txt")
        assert head["ContentType"] == "text/plain"


class TestRead:
    def test_round_trips_bytes(self, s3_backend):
        s3_backend.write("inbox/a.xml", b"\xef\xbb\xbf<Estimate/>")
        assert s3_backend.read("inbox/a.xml") == b"\xef\xbb\xbf<Estimate/>"

    def test_missing_key_raises_file_store_error(self, s3_backend):
        with pytest.raises(FileStoreError, match="no such file"):
            s3_backend.read("inbox/missing.xml")


class TestMove:
    def test_move_copies_and_deletes_source(self, s3_backend):
        s3_backend.write("inbox/a.xml", b"data")
        s3_backend.move("inbox/a.xml", "processed/a.xml")
        assert s3_backend.read("processed/a.xml") == b"data"
        with pytest.raises(FileStoreError):
            s3_backend.read("inbox/a.xml")

    def test_move_to_same_key_is_noop(self, s3_backend):
        s3_backend.write("inbox/a.xml", b"data")
        s3_backend.move("inbox/a.xml", "inbox/a.xml")
        assert s3_backend.read("inbox/a.xml") == b"data"

    def test_move_missing_source_raises(self, s3_backend):
        with pytest.raises(FileStoreError):
            s3_backend.move("inbox/ghost.xml", "processed/ghost.xml")


class TestListFiles:
    def test_lists_sorted_keys_under_prefix(self, s3_backend):
        s3_backend.write("inbox/b.ems", b"2")
        s3_backend.write("inbox/a.xml", b"1")
        s3_backend.write("processed/c.xml", b"3")
        assert s3_backend.list_files("inbox/") == ["inbox/a.xml", "inbox/b.ems"]

    def test_folder_markers_are_skipped(self, s3_backend, s3_client):
        s3_client.put_object(Bucket=BUCKET, Key="inbox/", Body=b"")
        s3_backend.write("inbox/a.xml", b"1")
        assert s3_backend.list_files("inbox/") == ["inbox/a.xml"]

    def test_empty_prefix_returns_nothing(self, s3_backend):
        assert s3_backend.list_files("nonexistent/") == []


class TestGuessContentType:
    @pytest.mark.parametrize(
        ("path", "expected"),
        [
            ("a.xml", "application/xml"),
            ("a.BMS", "application/xml"),
            ("a.ems", "text/plain"),
            ("noext", "application/octet-stream"),
        ],
    )
    def test_guess(self, path, expected):
        assert guess_content_type(path) == expected

"""
Tests for RemoteFile staging and line reading.
"""

import pytest

from bucketfeed.ingest.downloader import StreamDownloader
from bucketfeed.ingest.remote_file import RemoteFile


@pytest.fixture
def make_remote_file(tmp_path, mock_connection):
    downloader = StreamDownloader(mock_connection)

    def _make(descriptor, **kwargs):
        return RemoteFile(descriptor, downloader, staging_dir=tmp_path / "staging", **kwargs)

    return _make


class TestRemoteFile:
    """Tests for RemoteFile."""

    def test_download_and_read_plain_lines(self, make_remote_file, make_descriptor, mock_connection):
        descriptor = make_descriptor("logs/a.log", etag="e1")
        mock_connection.objects["logs/a.log"] = (b"one\r\ntwo\n", "e1")
        remote_file = make_remote_file(descriptor)

        path = remote_file.download()

        assert path.exists()
        assert path.name.startswith("a.log.")
        assert remote_file.downloaded
        assert not remote_file.compressed
        assert list(remote_file.each_line()) == [b"one", b"two"]

    def test_gzip_detected_from_key(self, make_remote_file, make_descriptor, mock_connection, gzip_payload):
        """Test that keys matching the gzip pattern are decompressed across members."""
        mock_connection.objects["logs/a.log.gz"] = (gzip_payload([b"a", b"b"], [b"c"]), "e1")
        remote_file = make_remote_file(make_descriptor("logs/a.log.gz", etag="e1"))

        remote_file.download()

        assert remote_file.compressed
        assert list(remote_file.each_line()) == [b"a", b"b", b"c"]

    def test_gzip_detected_from_content_encoding(self, make_remote_file, make_descriptor, mock_connection, gzip_payload):
        def get_object_to(key, sink):
            sink.write(gzip_payload([b"x"]))
            return {"ETag": "e1", "ContentEncoding": "gzip"}

        mock_connection.get_object_to.side_effect = get_object_to
        remote_file = make_remote_file(make_descriptor("logs/blob", etag="e1"))

        remote_file.download()

        assert remote_file.compressed
        assert list(remote_file.each_line()) == [b"x"]

    def test_custom_gzip_pattern(self, make_remote_file, make_descriptor):
        remote_file = make_remote_file(make_descriptor("logs/a.z"), gzip_pattern=r"\.z$")
        assert remote_file.compressed
        assert not make_remote_file(make_descriptor("logs/a.gzip.txt")).compressed
        assert make_remote_file(make_descriptor("logs/a.gzip")).compressed

    def test_changed_since_listing(self, make_remote_file, make_descriptor, mock_connection):
        """Test detection of a newer version fetched than the one listed."""
        mock_connection.objects["logs/a.log"] = (b"new\n", "e2")
        remote_file = make_remote_file(make_descriptor("logs/a.log", etag="e1"))

        remote_file.download()

        assert remote_file.changed_since_listing

    def test_cleanup_is_idempotent(self, make_remote_file, make_descriptor, mock_connection):
        mock_connection.objects["logs/a.log"] = (b"x\n", "etag-1")
        remote_file = make_remote_file(make_descriptor("logs/a.log"))
        path = remote_file.download()

        remote_file.cleanup()
        remote_file.cleanup()

        assert not path.exists()
        assert remote_file.local_path is None

    def test_each_line_requires_download(self, make_remote_file, make_descriptor):
        with pytest.raises(RuntimeError):
            list(make_remote_file(make_descriptor()).each_line())

    def test_metadata_key_only_by_default(self, make_remote_file, make_descriptor):
        remote_file = make_remote_file(make_descriptor("logs/a.log"))
        assert remote_file.metadata == {"s3": {"key": "logs/a.log"}}

    def test_metadata_with_object_properties(self, make_remote_file, make_descriptor):
        descriptor = make_descriptor("logs/a.log", etag="e1", size=42)
        remote_file = make_remote_file(descriptor, include_object_properties=True)

        s3 = remote_file.metadata["s3"]
        assert s3["key"] == "logs/a.log"
        assert s3["etag"] == "e1"
        assert s3["content_length"] == 42
        assert s3["last_modified"] == descriptor.last_modified.isoformat()

# This file is part of replica-client.
#
# See the COPYRIGHT file at the top-level directory of this distribution
# for details of code ownership.
#
# Use of this source code is governed by a 3-clause BSD-style
# license that can be found in the LICENSE file.

import json
import os
import shutil
import tempfile
import unittest
import unittest.mock
from datetime import UTC, datetime

from urllib3 import HTTPHeaderDict

from replica import (
    SNIFF_LENGTH,
    ZERO_TIME,
    DecodeError,
    FileInfo,
    canonical_key,
    decode_header_value,
    decode_listing,
    detect_content_type,
    header_key,
    metadata_headers,
    open_file,
    sort_files,
)


class SortFilesTestCase(unittest.TestCase):
    def test_sort(self):
        files = [
            FileInfo(name="B", is_dir=False),
            FileInfo(name="A", is_dir=True),
            FileInfo(name="A", is_dir=False),
            FileInfo(name="B", is_dir=True),
        ]
        result = [f"{f.name}:{'dir' if f.is_dir else 'file'}" for f in sort_files(files)]
        self.assertEqual(result, ["A:dir", "B:dir", "A:file", "B:file"])

        # The input is left untouched.
        self.assertEqual(files[0].name, "B")


class MetadataTestCase(unittest.TestCase):
    """Test the encoding of metadata to headers and back."""

    def test_header_key(self):
        self.assertEqual(header_key("color"), "Color")
        self.assertEqual(header_key("Color"), "Color")
        self.assertEqual(header_key("myKey"), "MyKey")
        self.assertEqual(header_key("my-key"), "My-key")
        self.assertEqual(header_key("été"), "été")
        self.assertEqual(header_key(""), "")

    def test_canonical_key(self):
        self.assertEqual(canonical_key("color"), "Color")
        self.assertEqual(canonical_key("my-key"), "My-Key")
        self.assertEqual(canonical_key("MYKEY"), "Mykey")
        self.assertEqual(canonical_key("with space"), "with space")

    def test_encode(self):
        self.assertEqual(metadata_headers({"color": "blue"}), {"X-Meta-Color": b"blue"})
        self.assertEqual(
            metadata_headers({"size": "big"}, prefix="X-Remove-Meta-"), {"X-Remove-Meta-Size": b"big"}
        )

        # Values are sent as UTF-8 bytes.
        self.assertEqual(
            metadata_headers({"city": "東京", "word": "été"}),
            {"X-Meta-City": "東京".encode(), "X-Meta-Word": b"\xc3\xa9t\xc3\xa9"},
        )
        self.assertEqual(metadata_headers(None), {})
        self.assertEqual(metadata_headers({}), {})

    def test_round_trip(self):
        """Headers are received as latin-1 text, like http.client does."""
        metadata = {"color": "blue", "city": "東京", "word": "été"}
        headers = HTTPHeaderDict(
            {key: value.decode("latin-1") for key, value in metadata_headers(metadata).items()}
        )
        info = FileInfo.from_headers(headers)
        self.assertEqual(info.metadata, {"Color": "blue", "City": "東京", "Word": "été"})

    def test_decode_header_value(self):
        self.assertEqual(decode_header_value("blue"), "blue")
        self.assertEqual(decode_header_value("été".encode().decode("latin-1")), "été")

        # Text which is not latin-1 was already decoded.
        self.assertEqual(decode_header_value("東京"), "東京")

        # Invalid UTF-8 is replaced.
        self.assertEqual(decode_header_value("\xe9t\xe9"), "\ufffdt\ufffd")

    def test_decode_multiple_values(self):
        headers = HTTPHeaderDict()
        headers.add("X-Meta-Tag", "red")
        headers.add("x-meta-tag", "green")
        headers.add("X-Meta-Color", "blue")
        headers.add("X-Remove-Meta-Size", "big")
        headers.add("X-Meta-", "nothing")
        info = FileInfo.from_headers(headers)
        self.assertEqual(info.metadata, {"Tag": "red green", "Color": "blue"})


class FileInfoTestCase(unittest.TestCase):
    """Test decoding and encoding descriptions of resources."""

    def test_from_headers(self):
        headers = {
            "X-Path": "/public/two/gopherblue.png",
            "X-Owner": "test",
            "X-Type": "file",
            "X-Length": "70372",
            "Last-Modified": "Wed, 12 Mar 2025 10:11:13 GMT",
            "X-Replica-Count": "2",
            "Content-Type": "image/png",
            "X-Meta-Color": "blue",
        }
        info = FileInfo.from_headers(headers)
        self.assertEqual(info.name, "gopherblue.png")
        self.assertEqual(info.path, "/public/two/gopherblue.png")
        self.assertEqual(info.owner, "test")
        self.assertFalse(info.is_dir)
        self.assertEqual(info.size, 70372)
        self.assertEqual(info.mod_time, datetime(2025, 3, 12, 10, 11, 13, tzinfo=UTC))
        self.assertEqual(info.replica_count, 2)
        self.assertEqual(info.content_type, "image/png")
        self.assertEqual(info.metadata, {"Color": "blue"})

    def test_from_headers_utf8(self):
        headers = {
            "X-Path": "/public/caf\xc3\xa9/\xc3\xa9t\xc3\xa9.txt",
            "X-Owner": "fran\xc3\xa7ois",
            "X-Meta-Word": "\xc3\xa9t\xc3\xa9",
        }
        info = FileInfo.from_headers(headers)
        self.assertEqual(info.path, "/public/café/été.txt")
        self.assertEqual(info.name, "été.txt")
        self.assertEqual(info.owner, "françois")
        self.assertEqual(info.metadata, {"Word": "été"})

    def test_from_headers_directory(self):
        info = FileInfo.from_headers({"X-Path": "/public/two/", "X-Type": "dir"})
        self.assertTrue(info.is_dir)
        self.assertEqual(info.name, "two")

    def test_from_headers_unparsable(self):
        """Unparsable values leave the zero value."""
        headers = {
            "X-Length": "big",
            "Last-Modified": "yesterday",
            "X-Replica-Count": "",
        }
        info = FileInfo.from_headers(headers)
        self.assertEqual(info.size, 0)
        self.assertEqual(info.mod_time, ZERO_TIME)
        self.assertEqual(info.replica_count, 0)
        self.assertEqual(info.path, "")
        self.assertEqual(info.name, "")
        self.assertEqual(info.metadata, {})

    def test_json(self):
        obj = {
            "name": "gophers.png",
            "path": "/public/two/gophers.png",
            "owner": "test",
            "size": 8042,
            "mod_time": "2024-05-01T10:00:00.123456789Z",
        }
        info = FileInfo.from_json(obj)
        self.assertEqual(info.name, "gophers.png")
        self.assertFalse(info.is_dir)
        self.assertEqual(info.size, 8042)
        self.assertEqual(info.mod_time, datetime(2024, 5, 1, 10, 0, 0, 123456, tzinfo=UTC))

        encoded = info.to_json()
        self.assertEqual(encoded["path"], obj["path"])
        self.assertEqual(encoded["mod_time"], "2024-05-01T10:00:00.123456Z")
        self.assertNotIn("is_dir", encoded)
        self.assertEqual(FileInfo.from_json(encoded), info)

    def test_json_not_serialized(self):
        info = FileInfo(path="a/b", content_type="text/plain", replica_count=3, metadata={"Color": "blue"})
        self.assertEqual(set(info.to_json()), {"name", "path", "mod_time"})

    def test_json_invalid(self):
        for obj in ([], "file", {"size": "12"}, {"is_dir": 1}, {"name": 3}):
            with self.subTest(obj=obj):
                with self.assertRaises(DecodeError):
                    FileInfo.from_json(obj)

    def test_decode_listing(self):
        body = json.dumps(
            [
                {"name": "one", "path": "/one", "is_dir": True, "mod_time": "2024-05-01T10:00:00Z"},
                {"path": "/test", "size": 819200},
            ]
        ).encode()
        files = decode_listing(body)
        self.assertEqual([f.name for f in files], ["one", "test"])
        self.assertTrue(files[0].is_dir)
        self.assertEqual(files[1].size, 819200)
        self.assertEqual(files[1].mod_time, ZERO_TIME)

        self.assertEqual(decode_listing(b"null"), [])
        self.assertEqual(decode_listing(b"[]"), [])

        for body in (b"l\n", b"{}", b'["file"]'):
            with self.subTest(body=body):
                with self.assertRaises(DecodeError):
                    decode_listing(body)


class ContentTypeTestCase(unittest.TestCase):
    """Test guessing the content type of local files."""

    def setUp(self):
        self.tmpdir = tempfile.mkdtemp(prefix="replica-test-")

    def tearDown(self):
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def _write(self, name, data):
        path = os.path.join(self.tmpdir, name)
        with open(path, "wb") as f:
            f.write(data)
        return path

    def test_detect(self):
        png = b"\x89PNG\r\n\x1a\n\x00\x00\x00\rIHDR\x00\x00\x00\x10\x00\x00\x00\x10\x08\x06\x00\x00\x00"
        self.assertEqual(detect_content_type(png), "image/png")
        self.assertEqual(detect_content_type(b"%PDF-1.4\n%\xe2\xe3\xcf\xd3\n"), "application/pdf")
        self.assertEqual(detect_content_type(b"hello world\n" * 10), "text/plain")
        self.assertEqual(detect_content_type(b"\x01\x9c\x07\x00\x13\xee" * 100), "application/octet-stream")

    def test_detect_first_bytes(self):
        """Only the first bytes are inspected."""
        with unittest.mock.patch("replica.fileinfo.magic.from_buffer", return_value="") as from_buffer:
            self.assertEqual(detect_content_type(b"x" * 4096), "application/octet-stream")

        from_buffer.assert_called_once_with(b"x" * SNIFF_LENGTH, mime=True)

    def test_open_by_extension(self):
        path = self._write("gopher.png", b"not really a png")
        info, file = open_file(path, {"Color": "blue"})
        with file:
            self.assertEqual(info.content_type, "image/png")
            self.assertEqual(info.size, 16)
            self.assertEqual(info.metadata, {"Color": "blue"})
            self.assertEqual(file.read(), b"not really a png")

    def test_open_by_contents(self):
        data = b"\x01\x9c\x07\x00\x13\xee" * 400
        path = self._write("test", data)
        info, file = open_file(path)
        with file:
            self.assertEqual(info.content_type, "application/octet-stream")
            self.assertEqual(info.size, len(data))
            self.assertEqual(info.metadata, {})

            # The file is rewound after sniffing its first bytes.
            self.assertEqual(file.read(), data)

    def test_open_missing(self):
        with self.assertRaises(FileNotFoundError):
            open_file(os.path.join(self.tmpdir, "missing"))


if __name__ == "__main__":
    unittest.main()

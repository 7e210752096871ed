"""
Tests for AttachmentSpooler: temporary spooling, relocation and cleanup
"""

import hashlib
import os
import tempfile
import threading
import unittest
from pathlib import Path
from unittest.mock import patch

from mailstore.modules.attachment_spooler import AttachmentSpooler, next_disambiguator
from mailstore.modules.errors import SpoolError


class TestAttachmentSpooler(unittest.TestCase):

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        root = Path(self._tmp.name)
        self.attachments = root / "attachments"
        self.spool_dir = root / "spool"
        self.attachments.mkdir()
        self.spool_dir.mkdir()
        self.spooler = AttachmentSpooler(self.attachments, temp_dir=self.spool_dir, max_workers=2)

    def tearDown(self):
        self.spooler.shutdown()
        self._tmp.cleanup()

    def test_spool_writes_chunks_and_computes_checksum(self):
        handle = self.spooler.spool([b"hello ", b"world"])
        handle.result(timeout=5)

        self.assertEqual(handle.length, 11)
        self.assertEqual(handle.checksum, hashlib.md5(b"hello world").hexdigest())
        self.assertEqual(Path(handle.temp_path).read_bytes(), b"hello world")
        self.assertEqual(Path(handle.temp_path).parent, self.spool_dir)

    def test_spool_returns_before_write_completes(self):
        release = threading.Event()

        def slow_chunks():
            release.wait(5)
            yield b"late"

        handle = self.spooler.spool(slow_chunks())
        self.assertFalse(handle.done())
        release.set()
        handle.result(timeout=5)
        self.assertTrue(handle.done())

    def test_finalize_moves_to_content_addressed_name(self):
        handle = self.spooler.spool([b"payload"]).result(timeout=5)
        temp_path = handle.temp_path

        storage_path = self.spooler.finalize(handle, handle.checksum)

        self.assertTrue(storage_path.startswith(hashlib.md5(b"payload").hexdigest() + "-"))
        self.assertEqual((self.attachments / storage_path).read_bytes(), b"payload")
        self.assertFalse(os.path.exists(temp_path))
        self.assertIsNone(handle.temp_path)

    def test_identical_content_gets_distinct_names(self):
        first = self.spooler.spool([b"same"]).result(timeout=5)
        second = self.spooler.spool([b"same"]).result(timeout=5)

        name1 = self.spooler.finalize(first)
        name2 = self.spooler.finalize(second)

        self.assertNotEqual(name1, name2)
        self.assertEqual(name1.split("-", 1)[0], name2.split("-", 1)[0])

    def test_disambiguator_is_monotonic_per_process(self):
        a = next_disambiguator()
        b = next_disambiguator()
        self.assertNotEqual(a, b)
        self.assertLess(int(a.rsplit(".", 1)[1]), int(b.rsplit(".", 1)[1]))

    def test_allocation_failure_surfaces_as_spool_error(self):
        def exhausted():
            raise OSError("no more names")

        spooler = AttachmentSpooler(self.attachments, allocate_temp_path=exhausted)
        try:
            handle = spooler.spool([b"x"])
            with self.assertRaises(SpoolError):
                handle.result(timeout=5)
        finally:
            spooler.shutdown()

    def test_write_failure_removes_partial_file(self):
        def broken_chunks():
            yield b"partial"
            raise OSError("disk full")

        handle = self.spooler.spool(broken_chunks())
        with self.assertRaises(SpoolError):
            handle.result(timeout=5)
        self.assertIsNone(handle.temp_path)
        self.assertEqual(list(self.spool_dir.iterdir()), [])

    def test_relocation_failure_keeps_temporary_bytes(self):
        handle = self.spooler.spool([b"keep me"]).result(timeout=5)
        temp_path = handle.temp_path

        with patch("mailstore.modules.attachment_spooler.shutil.move",
                   side_effect=PermissionError("read-only")):
            with self.assertRaises(SpoolError):
                self.spooler.finalize(handle)

        self.assertEqual(handle.temp_path, temp_path)
        self.assertEqual(Path(temp_path).read_bytes(), b"keep me")
        self.assertEqual(list(self.attachments.iterdir()), [])

    def test_finalize_without_spool_fails(self):
        handle = self.spooler.spool([b"x"]).result(timeout=5)
        self.spooler.discard(handle)
        with self.assertRaises(SpoolError):
            self.spooler.finalize(handle)

    def test_remove_and_read_bytes(self):
        handle = self.spooler.spool([b"stored"]).result(timeout=5)
        name = self.spooler.finalize(handle)

        self.assertEqual(self.spooler.read_bytes(name), b"stored")
        self.assertTrue(self.spooler.remove(name))
        self.assertFalse(self.spooler.remove(name))

    def test_path_for_rejects_traversal(self):
        with self.assertRaises(SpoolError):
            self.spooler.path_for("../../etc/passwd")
        with self.assertRaises(SpoolError):
            self.spooler.read_bytes("not-a-storage-name")

    def test_spool_after_shutdown_fails(self):
        self.spooler.shutdown()
        with self.assertRaises(SpoolError):
            self.spooler.spool([b"x"])


if __name__ == '__main__':
    unittest.main()

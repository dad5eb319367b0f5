from __future__ import annotations

import os
import shutil
import tempfile
import unittest
from pathlib import Path
from unittest.mock import Mock

from entity_parser.buffer import SpooledBuffer
from entity_parser.exceptions import FileError


class TestSpooledBuffer(unittest.TestCase):
    def setUp(self) -> None:
        self.d = os.path.realpath(tempfile.mkdtemp())
        self.b = SpooledBuffer(max_memory_size=10, tmp_dir=self.d)

    def tearDown(self) -> None:
        self.b.close()
        shutil.rmtree(self.d)

    def assert_data(self, data: bytes) -> None:
        f = self.b.rewind()
        self.assertEqual(f.read(), data)

    def test_simple(self) -> None:
        self.b.write(b"foo")
        self.assertTrue(self.b.in_memory)
        self.assertIsNone(self.b.actual_file_name)
        self.assertEqual(self.b.size, 3)
        self.assert_data(b"foo")

    def test_at_limit_stays_in_memory(self) -> None:
        self.b.write(b"1" * 10)
        self.assertTrue(self.b.in_memory)

    def test_fallback(self) -> None:
        self.b.write(b"1" * 10)
        self.b.write(b"2" * 10)
        self.assertFalse(self.b.in_memory)
        self.assert_data(b"11111111112222222222")

        # Flushing again changes nothing.
        old_obj = self.b.file_object
        self.b.flush_to_disk()
        self.assertFalse(self.b.in_memory)
        self.assertIs(self.b.file_object, old_obj)

    def test_file_name(self) -> None:
        self.b.write(b"12345678901")
        self.assertFalse(self.b.in_memory)

        name = self.b.actual_file_name
        assert name is not None
        self.assertEqual(os.path.dirname(name), self.d)
        self.assertTrue(os.path.exists(name))

    def test_temp_file_removed_on_close(self) -> None:
        self.b.write(b"12345678901")
        name = self.b.actual_file_name
        assert name is not None

        self.b.close()
        self.assertFalse(os.path.exists(name))

    def test_keep_temp_file(self) -> None:
        b = SpooledBuffer(max_memory_size=1, tmp_dir=self.d, suffix=".txt", delete=False)
        b.write(b"data")
        b.close()

        name = b.actual_file_name
        assert name is not None
        self.assertTrue(name.endswith(".txt"))
        with open(name, "rb") as f:
            self.assertEqual(f.read(), b"data")

    def test_unbounded_memory(self) -> None:
        b = SpooledBuffer(max_memory_size=None)
        b.write(b"x" * 100000)
        self.assertTrue(b.in_memory)
        b.close()

    def test_bytes_tmp_dir(self) -> None:
        b = SpooledBuffer(max_memory_size=1, tmp_dir=os.fsencode(self.d))
        b.write(b"ab")
        self.assertFalse(b.in_memory)
        self.assertIsInstance(b.actual_file_name, str)
        b.close()

    def test_invalid_dir(self) -> None:
        b = SpooledBuffer(max_memory_size=5, tmp_dir=os.path.join(self.d, "notexisting"))
        with self.assertRaises(FileError):
            b.write(b"1234567890")

    def test_invalid_write(self) -> None:
        m = Mock()
        m.write.return_value = 5
        self.b._fileobj = m
        v = self.b.write(b"foobar")
        self.assertEqual(v, 5)
        self.assertEqual(self.b.size, 0)

    def test_rewind_twice(self) -> None:
        self.b.write(b"abc")
        self.assert_data(b"abc")
        self.assert_data(b"abc")

    def test_repr(self) -> None:
        self.assertEqual(repr(self.b), "SpooledBuffer(size=0, in_memory=True)")


def test_suffix_on_disk(tmp_path: Path) -> None:
    b = SpooledBuffer(max_memory_size=2, tmp_dir=str(tmp_path), suffix=".png")
    b.write(b"12345")

    assert b.actual_file_name is not None
    assert os.path.splitext(b.actual_file_name)[1] == ".png"
    b.close()

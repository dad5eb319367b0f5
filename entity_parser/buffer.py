from __future__ import annotations

import logging
import os
import shutil
import tempfile
from io import BufferedRandom, BytesIO
from typing import cast

from .exceptions import FileError


class SpooledBuffer:
    """A growable byte store that can be read back from the start.

    Data is kept in an in-memory buffer until more than ``max_memory_size``
    bytes have been written, at which point everything is copied into a
    temporary file on disk and further writes go there.  The entity parser
    uses it to keep a copy of the request body so it can be re-read, and the
    multipart parser uses it to store uploaded files.

    :param max_memory_size: number of bytes to keep in memory before spilling
                            to disk.  ``None`` keeps everything in memory.
    :param tmp_dir: directory for the temporary file, or ``None`` for the
                    system default.
    :param suffix: suffix for the temporary file's name, e.g. the extension of
                   an uploaded file.
    :param delete: whether the temporary file is removed once it is closed.
    """

    def __init__(
        self,
        max_memory_size: int | None = 1024 * 1024,
        tmp_dir: str | bytes | None = None,
        suffix: str | None = None,
        delete: bool = True,
    ) -> None:
        self.logger = logging.getLogger(__name__)
        self.max_memory_size = max_memory_size
        self.tmp_dir = tmp_dir
        self.suffix = suffix
        self.delete = delete

        self._in_memory = True
        self._bytes_written = 0
        self._fileobj: BytesIO | BufferedRandom = BytesIO()

        # Only set once we have spilled to disk.
        self._actual_file_name: str | None = None

    @property
    def actual_file_name(self) -> str | None:
        """
        The file name that this buffer is saved as.  Will return None if it's
        not currently saved on disk.
        """
        return self._actual_file_name

    @property
    def file_object(self) -> BytesIO | BufferedRandom:
        """
        The file object that we're currently writing to.
        """
        return self._fileobj

    @property
    def size(self) -> int:
        """
        Number of bytes written so far.
        """
        return self._bytes_written

    @property
    def in_memory(self) -> bool:
        """
        Whether or not this buffer is currently stored in-memory or on-disk.
        """
        return self._in_memory

    def flush_to_disk(self) -> None:
        """
        If the buffer is already on-disk, do nothing.  Otherwise, copy from the
        in-memory buffer to a disk file, and then reassign our internal file
        object to this new disk file.
        """
        if not self._in_memory:
            self.logger.warning("Trying to flush to disk when we're not in memory")
            return

        # Go back to the start of our buffer.
        self._fileobj.seek(0)

        # Open a new file and copy everything over.
        new_file = self._get_disk_file()
        shutil.copyfileobj(self._fileobj, new_file)

        # Seek to the new position in our new file.
        new_file.seek(self._bytes_written)

        old_fileobj = self._fileobj
        self._fileobj = new_file
        self._in_memory = False
        old_fileobj.close()

    def _get_disk_file(self) -> BufferedRandom:
        """
        This function is responsible for getting a file object on-disk for us.
        """
        tmp_dir = self.tmp_dir
        if isinstance(tmp_dir, bytes):
            tmp_dir = os.fsdecode(tmp_dir)

        options = {"suffix": self.suffix, "delete": self.delete, "dir": tmp_dir}
        self.logger.info("Creating a temporary file with options: %r", options)
        try:
            tmp_file = cast(BufferedRandom, tempfile.NamedTemporaryFile(**options))
        except OSError:
            self.logger.exception("Error creating named temporary file")
            raise FileError("Error creating named temporary file")

        self._actual_file_name = os.fsdecode(tmp_file.name)
        return tmp_file

    def write(self, data: bytes) -> int:
        bwritten = self._fileobj.write(data)

        # If the bytes written isn't the same as the length, just return.
        if bwritten != len(data):
            self.logger.warning("bwritten != len(data) (%d != %d)", bwritten, len(data))
            return bwritten

        self._bytes_written += bwritten

        # If we're in-memory and are over our limit, we create a file.
        if self._in_memory and self.max_memory_size is not None and self._bytes_written > self.max_memory_size:
            self.logger.info("Flushing to disk")
            self.flush_to_disk()

        return bwritten

    def rewind(self) -> BytesIO | BufferedRandom:
        """
        Return the underlying file object positioned at the start of
        everything written so far.
        """
        self._fileobj.flush()
        self._fileobj.seek(0)
        return self._fileobj

    def close(self) -> None:
        self._fileobj.close()

    def __repr__(self) -> str:
        return "{}(size={!r}, in_memory={!r})".format(self.__class__.__name__, self.size, self.in_memory)

"""``rpmdb.sqlite`` reader (RPM >= 4.16)."""

import os
import sqlite3
import tempfile
from typing import Iterator

from ...exceptions import DatabaseError


def iter_sqlite_blobs(data: bytes) -> Iterator[bytes]:
    """Yield header blobs from the ``Packages`` table.

    sqlite3 needs a file, so the captured bytes are written to a temporary
    copy which is opened read-only and removed afterwards.

    Raises:
        DatabaseError: If the database cannot be opened or queried
    """
    fd, path = tempfile.mkstemp(prefix="rpmdb-", suffix=".sqlite")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)

        try:
            conn = sqlite3.connect(f"file:{path}?mode=ro", uri=True)
        except sqlite3.Error as e:
            raise DatabaseError(f"Cannot open rpmdb.sqlite: {e}") from e
        try:
            rows = conn.execute("SELECT blob FROM Packages").fetchall()
        except sqlite3.Error as e:
            raise DatabaseError(f"Cannot query rpmdb.sqlite: {e}") from e
        finally:
            conn.close()
    finally:
        os.unlink(path)

    for (blob,) in rows:
        if blob:
            yield bytes(blob)

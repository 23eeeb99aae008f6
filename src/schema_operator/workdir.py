"""Temporary working directory for engine commands.

Layout:

    <tmp>/atlas.hcl                 rendered engine config
    <tmp>/schema.sql|schema.hcl     desired schema, when file-based
    <tmp>/migrations/               single-file migration dir used for linting
"""

from __future__ import annotations

import base64
import hashlib
import logging
import shutil
import tempfile
from pathlib import Path
from types import TracebackType

from .data import ManagedData

logger = logging.getLogger(__name__)

CONFIG_FILE_NAME = "atlas.hcl"
MIGRATIONS_DIR_NAME = "migrations"
SUM_FILE_NAME = "atlas.sum"


def migration_sum(files: list[tuple[str, bytes]]) -> str:
    """Compute the integrity file of a migration directory.

    The first line holds the hash over every file, each following line the
    cumulative hash up to and including that file.

    Args:
        files: (name, content) pairs in directory order.

    Returns:
        Contents of atlas.sum.
    """
    h = hashlib.sha256()
    lines: list[str] = []
    for name, content in files:
        h.update(name.encode("utf-8"))
        h.update(content)
        lines.append(f"{name} h1:{base64.b64encode(h.copy().digest()).decode()}")
    total = base64.b64encode(h.digest()).decode()
    return "\n".join([f"h1:{total}", *lines]) + "\n"


class WorkingDir:
    """Context manager holding the files an engine command needs.

    Example:
        with WorkingDir(data) as wd:
            engine = factory(wd.path, data.cloud)
    """

    def __init__(self, data: ManagedData, prefix: str = "schema-operator-") -> None:
        self._data = data
        self._prefix = prefix
        self._path: Path | None = None

    @property
    def path(self) -> Path:
        if self._path is None:
            raise RuntimeError("working directory is not open")
        return self._path

    def open(self) -> WorkingDir:
        """Create the directory and write the config and schema files.

        Raises:
            SpecError: If the config cannot be rendered.
            OSError: If the files cannot be written.
        """
        config = self._data.render()
        self._path = Path(tempfile.mkdtemp(prefix=self._prefix))
        try:
            (self._path / CONFIG_FILE_NAME).write_text(config, encoding="utf-8")
            if self._data.schema and self._data.desired_is_file():
                (self._path / self._data.schema_file_name()).write_bytes(self._data.schema)
        except OSError:
            self.close()
            raise
        logger.debug("Created working directory", extra={"path": str(self._path)})
        return self

    def write_migration(self, statements: list[str]) -> str:
        """Write statements as the only migration file of the lint directory.

        Returns:
            URL of the migration directory, relative to the working directory.
        """
        content = "".join(f"{stmt.rstrip().rstrip(';')};\n" for stmt in statements).encode("utf-8")
        migrations = self.path / MIGRATIONS_DIR_NAME
        migrations.mkdir(exist_ok=True)
        name = "1.sql"
        (migrations / name).write_bytes(content)
        (migrations / SUM_FILE_NAME).write_text(migration_sum([(name, content)]), encoding="utf-8")
        return f"file://{MIGRATIONS_DIR_NAME}"

    def close(self) -> None:
        if self._path is not None:
            shutil.rmtree(self._path, ignore_errors=True)
            logger.debug("Removed working directory", extra={"path": str(self._path)})
            self._path = None

    def __enter__(self) -> WorkingDir:
        return self.open()

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

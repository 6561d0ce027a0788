import os
import tempfile
from collections.abc import Iterable
from pathlib import Path

from ..utils.log import get_logger
from .models import CondensedRecord

log = get_logger(__name__)


class JsonlLog:
    """Append-only JSON-lines file of condensed records.

    Used for the staging log (crawler output awaiting merge) and for the
    failed-batch log (records whose merge batch failed, kept for replay).
    Lines are kept verbatim so a failed batch is re-queued exactly as staged.
    """

    def __init__(self, path: Path) -> None:
        self.path = path

    def append(self, records: Iterable[CondensedRecord]) -> int:
        return self.append_lines(r.model_dump_json() for r in records)

    def append_lines(self, lines: Iterable[str]) -> int:
        lines = [line.rstrip("\n") for line in lines if line.strip()]
        if not lines:
            return 0
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("a", encoding="utf-8") as f:
            f.write("\n".join(lines) + "\n")
            f.flush()
            os.fsync(f.fileno())
        return len(lines)

    def read_lines(self) -> list[str]:
        if not self.path.exists():
            return []
        with self.path.open("r", encoding="utf-8") as f:
            return [line.rstrip("\n") for line in f if line.strip()]

    def truncate(self) -> None:
        if self.path.exists():
            self.path.write_text("", encoding="utf-8")
            log.debug("jsonl_log_truncated", path=str(self.path))

    def rewrite(self, lines: list[str]) -> None:
        """Atomically replace the file contents with ``lines``."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.writelines(line + "\n" for line in lines)
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def __len__(self) -> int:
        return len(self.read_lines())

from __future__ import annotations

import shutil
import sqlite3
import tempfile
import time
from dataclasses import dataclass, field
from pathlib import Path


_REPO_ROOT = Path(__file__).resolve().parents[2]


def assert_safe_temp_db_path(db_path: str) -> None:
    """Test databases live under the system temp dir and never inside the checkout."""
    resolved = Path(db_path).resolve()
    temp_root = Path(tempfile.gettempdir()).resolve()
    if not resolved.is_relative_to(temp_root):
        raise ValueError(f"Temporary DB must live under TEMP: {resolved}")
    if resolved.is_relative_to(_REPO_ROOT):
        raise ValueError(f"Temporary DB cannot live inside repository: {resolved}")


def _rmtree_with_retry(path: Path, attempts: int = 6, base_delay: float = 0.05) -> None:
    for attempt in range(attempts):
        try:
            shutil.rmtree(path)
            return
        except FileNotFoundError:
            return
        except OSError:
            if attempt == attempts - 1:
                raise
            time.sleep(base_delay * (2**attempt))


@dataclass
class TempDbSandbox:
    """Throwaway SQLite file plus a Config subclass pointing the app at it."""

    prefix: str = "rfq_approvals_tests"
    db_name: str = "rfq_approvals_test.db"
    temp_dir: str = field(init=False)
    db_path: str = field(init=False)

    def __post_init__(self) -> None:
        self.temp_dir = tempfile.mkdtemp(prefix=f"{self.prefix}_")
        self.db_path = str(Path(self.temp_dir) / self.db_name)
        assert_safe_temp_db_path(self.db_path)
        self.connect().close()

    def connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=30.0)
        conn.row_factory = sqlite3.Row
        return conn

    def make_config(self, base_config, **overrides):
        attrs = {
            "DATABASE_DIR": self.temp_dir,
            "DB_PATH": self.db_path,
            "APPROVAL_SCHEDULER_ENABLED": False,
            "RATE_LIMIT_ENABLED": False,
        }
        attrs.update(overrides)
        return type("TempConfig", (base_config,), attrs)

    def cleanup(self) -> None:
        _rmtree_with_retry(Path(self.temp_dir))

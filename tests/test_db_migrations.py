import os
import sqlite3
import unittest

from app import create_app
from app.config import Config
from app.db import close_db, table_names
from tests.helpers.temp_db import TempDbSandbox


def _table_exists(db_path: str, table_name: str) -> bool:
    conn = sqlite3.connect(db_path)
    try:
        row = conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table' AND name = ?",
            (table_name,),
        ).fetchone()
        return row is not None
    finally:
        conn.close()


def _count_rows(db_path: str, table_name: str) -> int:
    conn = sqlite3.connect(db_path)
    try:
        return int(conn.execute(f"SELECT COUNT(*) FROM {table_name}").fetchone()[0])
    finally:
        conn.close()


class DbMigrationsTest(unittest.TestCase):
    def setUp(self) -> None:
        self._temp_db = TempDbSandbox(prefix="rfq_migrations")
        self.db_path = self._temp_db.db_path
        self._prev_env = os.environ.get("FLASK_ENV")
        os.environ["FLASK_ENV"] = "development"

    def tearDown(self) -> None:
        if self._prev_env is None:
            os.environ.pop("FLASK_ENV", None)
        else:
            os.environ["FLASK_ENV"] = self._prev_env
        self._temp_db.cleanup()

    def _build_app(self, *, testing: bool, db_auto_init: bool):
        return create_app(self._temp_db.make_config(Config, TESTING=testing, DB_AUTO_INIT=db_auto_init))

    def test_schema_not_created_by_default(self) -> None:
        app = self._build_app(testing=False, db_auto_init=False)
        with app.app_context():
            close_db()

        self.assertFalse(_table_exists(self.db_path, "approval_runs"))

    def test_schema_created_with_explicit_dev_flag(self) -> None:
        app = self._build_app(testing=False, db_auto_init=True)
        with app.app_context():
            close_db()

        for table in table_names():
            self.assertTrue(_table_exists(self.db_path, table), table)

    def test_auto_init_skipped_outside_development(self) -> None:
        os.environ["FLASK_ENV"] = "staging"
        app = self._build_app(testing=False, db_auto_init=True)
        with app.app_context():
            close_db()

        self.assertFalse(_table_exists(self.db_path, "approval_runs"))

    def test_production_requires_a_database_url(self) -> None:
        os.environ["FLASK_ENV"] = "production"
        with self.assertRaises(RuntimeError):
            create_app(self._temp_db.make_config(Config, DATABASE_URL=None))

    def test_flask_db_upgrade_and_downgrade(self) -> None:
        app = self._build_app(testing=False, db_auto_init=False)
        runner = app.test_cli_runner()

        upgrade_result = runner.invoke(args=["db", "upgrade"])
        self.assertEqual(upgrade_result.exit_code, 0, msg=upgrade_result.output)
        self.assertTrue(_table_exists(self.db_path, "approval_runs"))

        downgrade_result = runner.invoke(args=["db", "downgrade", "base"])
        self.assertEqual(downgrade_result.exit_code, 0, msg=downgrade_result.output)
        self.assertFalse(_table_exists(self.db_path, "approval_runs"))

        reupgrade_result = runner.invoke(args=["db", "upgrade"])
        self.assertEqual(reupgrade_result.exit_code, 0, msg=reupgrade_result.output)
        self.assertTrue(_table_exists(self.db_path, "approval_runs"))

    def test_db_init_and_seed_rules(self) -> None:
        app = self._build_app(testing=False, db_auto_init=False)
        runner = app.test_cli_runner()

        init_result = runner.invoke(args=["db", "init"])
        self.assertEqual(init_result.exit_code, 0, msg=init_result.output)
        self.assertIn(f"{len(table_names())} tables", init_result.output)

        seed_result = runner.invoke(args=["db", "seed-rules", "--tenant-id", "tenant-seed"])
        self.assertEqual(seed_result.exit_code, 0, msg=seed_result.output)
        self.assertIn("tenant-seed", seed_result.output)
        self.assertGreater(_count_rows(self.db_path, "field_rules"), 0)

        again = runner.invoke(args=["db", "seed-rules", "--tenant-id", "tenant-seed"])
        self.assertEqual(again.exit_code, 0, msg=again.output)
        self.assertEqual(_count_rows(self.db_path, "modification_rules"), 1)


if __name__ == "__main__":
    unittest.main()

import os
import shutil
import sqlite3
import tempfile
import unittest
import uuid

from desdobra import create_app
from desdobra.config import Config
from desdobra.db import SCHEMA_TABLES, close_db
from desdobra.db_migrations import to_sqlalchemy_url


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


class DbMigrationsTest(unittest.TestCase):
    def setUp(self) -> None:
        base_tmp = tempfile.gettempdir()
        self._tmpdir_path = os.path.join(base_tmp, f"desdobra_migrations_test_{uuid.uuid4().hex}")
        os.makedirs(self._tmpdir_path, exist_ok=True)
        self.db_path = os.path.join(self._tmpdir_path, "desdobra_test.db")
        self._prev_env = os.environ.get("FLASK_ENV")
        os.environ["FLASK_ENV"] = "development"

    def tearDown(self) -> None:
        if self._prev_env is None:
            os.environ.pop("FLASK_ENV", None)
        else:
            os.environ["FLASK_ENV"] = self._prev_env
        shutil.rmtree(self._tmpdir_path, ignore_errors=True)

    def _build_app(self, *, testing: bool, db_auto_init: bool):
        db_path = self.db_path

        class TempConfig(Config):
            DATABASE_DIR = self._tmpdir_path
            DB_PATH = db_path
            DATABASE_READ_URL = None
            TESTING = testing
            DB_AUTO_INIT = db_auto_init
            LOG_JSON = False

        return create_app(TempConfig)

    def test_schema_not_created_by_default(self) -> None:
        app = self._build_app(testing=False, db_auto_init=False)
        with app.app_context():
            close_db()

        self.assertFalse(_table_exists(self.db_path, "factor_operations"))

    def test_schema_created_with_explicit_dev_flag(self) -> None:
        app = self._build_app(testing=False, db_auto_init=True)
        with app.app_context():
            close_db()

        for table in SCHEMA_TABLES:
            self.assertTrue(_table_exists(self.db_path, table), table)

    def test_flask_db_upgrade_and_downgrade(self) -> None:
        app = self._build_app(testing=False, db_auto_init=False)
        runner = app.test_cli_runner()

        upgrade_result = runner.invoke(args=["db", "upgrade"])
        self.assertEqual(upgrade_result.exit_code, 0, msg=upgrade_result.output)
        self.assertTrue(_table_exists(self.db_path, "tenants"))
        self.assertTrue(_table_exists(self.db_path, "factor_operations"))

        downgrade_result = runner.invoke(args=["db", "downgrade", "base"])
        self.assertEqual(downgrade_result.exit_code, 0, msg=downgrade_result.output)
        self.assertFalse(_table_exists(self.db_path, "factor_operations"))
        self.assertFalse(_table_exists(self.db_path, "tenants"))

        reupgrade_result = runner.invoke(args=["db", "upgrade"])
        self.assertEqual(reupgrade_result.exit_code, 0, msg=reupgrade_result.output)
        self.assertTrue(_table_exists(self.db_path, "factor_operations"))

    def test_stamp_marks_auto_initialized_database(self) -> None:
        app = self._build_app(testing=False, db_auto_init=True)
        runner = app.test_cli_runner()

        stamp_result = runner.invoke(args=["db", "stamp"])
        self.assertEqual(stamp_result.exit_code, 0, msg=stamp_result.output)
        self.assertTrue(_table_exists(self.db_path, "alembic_version"))

        upgrade_result = runner.invoke(args=["db", "upgrade"])
        self.assertEqual(upgrade_result.exit_code, 0, msg=upgrade_result.output)


class SqlAlchemyUrlTest(unittest.TestCase):
    def test_postgres_scheme_is_normalized(self) -> None:
        self.assertEqual(to_sqlalchemy_url("postgres://u:p@host/db"), "postgresql://u:p@host/db")

    def test_sqlite_file_path_becomes_absolute_url(self) -> None:
        url = to_sqlalchemy_url("relative/desdobra.db")
        self.assertTrue(url.startswith("sqlite:///"))
        self.assertTrue(url.endswith("relative/desdobra.db"))

    def test_empty_path_is_rejected(self) -> None:
        with self.assertRaises(RuntimeError):
            to_sqlalchemy_url("  ")


if __name__ == "__main__":
    unittest.main()

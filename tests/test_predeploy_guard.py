from __future__ import annotations

import os
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from sqlalchemy import create_engine, text

from kars import models  # noqa: F401
from kars.db import Base
from kars.settings import get_settings
from scripts.predeploy_guard import (
    check_database_migration_and_schema,
    check_revision_id_lengths,
    check_secrets,
)


class PredeployGuardTests(unittest.TestCase):
    def setUp(self) -> None:
        get_settings.cache_clear()

    def tearDown(self) -> None:
        get_settings.cache_clear()

    def test_shipped_revisions_fit_alembic_column(self) -> None:
        result = check_revision_id_lengths()

        self.assertTrue(result.ok)
        self.assertGreaterEqual(result.details["total"], 1)

    def test_long_revision_ids_fail(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            Path(tmp, "0002_x.py").write_text(
                'revision: str = "0002_this_revision_identifier_is_far_too_long"\n',
                encoding="utf-8",
            )
            result = check_revision_id_lengths(Path(tmp))

        self.assertEqual(result.status, "fail")
        self.assertEqual(result.details["too_long"], ["0002_this_revision_identifier_is_far_too_long"])

    def test_secret_configuration_levels(self) -> None:
        with patch.dict(os.environ, {"JWT_SECRET": "change-me", "KARS_MASTER_KEY": ""}, clear=False):
            get_settings.cache_clear()
            self.assertEqual(check_secrets().status, "fail")
        with patch.dict(os.environ, {"JWT_SECRET": "s3cret-value", "KARS_MASTER_KEY": ""}, clear=False):
            get_settings.cache_clear()
            self.assertEqual(check_secrets().status, "warn")
        with patch.dict(os.environ, {"JWT_SECRET": "s3cret-value", "KARS_MASTER_KEY": "mk"}, clear=False):
            get_settings.cache_clear()
            self.assertTrue(check_secrets().ok)

    def test_database_check_without_url_is_a_warning(self) -> None:
        with patch.dict(os.environ, {"DATABASE_URL": ""}, clear=False):
            result = check_database_migration_and_schema()

        self.assertEqual(result.status, "warn")
        self.assertEqual(result.details["reason"], "DATABASE_URL_NOT_SET")

    def test_database_at_head_passes(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            url = f"sqlite:///{Path(tmp) / 'guard.db'}"
            engine = create_engine(url)
            Base.metadata.create_all(bind=engine)
            with engine.begin() as connection:
                connection.execute(text("CREATE TABLE alembic_version (version_num VARCHAR(32) NOT NULL)"))
                connection.execute(text("INSERT INTO alembic_version (version_num) VALUES ('0001_initial')"))
            engine.dispose()

            with patch.dict(os.environ, {"DATABASE_URL": url}, clear=False):
                result = check_database_migration_and_schema()

        self.assertEqual(result.status, "ok", result.details)
        self.assertEqual(result.details["missing_heads"], [])


if __name__ == "__main__":
    unittest.main()

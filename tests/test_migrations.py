from pathlib import Path

import allure
from sqlalchemy import text

from ms_audit.storage.repository import FindingRepository

pytestmark = [
    allure.epic("Findings"),
    allure.feature("Finding Store"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    repository = FindingRepository(tmp_path / "migrations.db")
    repository.init_schema()

    with repository.engine.connect() as connection:
        version = connection.execute(
            text("SELECT version_num FROM alembic_version LIMIT 1"),
        ).scalar_one()
        tables = connection.execute(
            text(
                """
                SELECT name
                FROM sqlite_master
                WHERE type = 'table'
                  AND name IN ('microservices', 'usecases', 'analysis_results')
                ORDER BY name
                """,
            ),
        ).scalars().all()

    assert version == "20261017_0001"
    assert tables == ["analysis_results", "microservices", "usecases"]
    repository.close()


def test_init_schema_is_idempotent(tmp_path: Path) -> None:
    repository = FindingRepository(tmp_path / "migrations.db")
    repository.init_schema()
    repository.register_microservice(name="auth", path=tmp_path)

    repository.init_schema()

    assert [view.name for view in repository.list_microservices()] == ["auth"]
    repository.close()


def test_result_and_usecase_tables_use_autoincrement(tmp_path: Path) -> None:
    repository = FindingRepository(tmp_path / "migrations.db")
    repository.init_schema()

    with repository.engine.connect() as connection:
        ddl = dict(
            connection.execute(
                text(
                    """
                    SELECT name, sql
                    FROM sqlite_master
                    WHERE type = 'table' AND name IN ('usecases', 'analysis_results')
                    """,
                ),
            ).all(),
        )

    assert "AUTOINCREMENT" in ddl["usecases"]
    assert "AUTOINCREMENT" in ddl["analysis_results"]
    repository.close()

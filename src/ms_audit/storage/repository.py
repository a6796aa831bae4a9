"""SQLite-backed store for microservices, use cases and analysis results."""

from __future__ import annotations

import fnmatch
import logging
from datetime import UTC, datetime
from pathlib import Path

from sqlalchemy import delete as sa_delete
from sqlalchemy import update as sa_update
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, col, select

from ms_audit.agent.errors import ReconciliationFailure
from ms_audit.storage.alembic_runner import upgrade_head
from ms_audit.storage.common import build_sqlite_engine, utc_now
from ms_audit.storage.sqlmodel_models import AnalysisResultRow, Microservice, UseCaseRow
from ms_audit.tasks.models import (
    LinkedIssue,
    MicroserviceView,
    StoredResult,
    StoredUseCase,
)
from ms_audit.tasks.reconcile import AnalysisPlan, UseCasePlan

logger = logging.getLogger(__name__)


class FindingRepository:
    """Persistence facade backed by SQLModel + SQLite."""

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations up to head."""

        upgrade_head(self.db_path)

    def register_microservice(
        self,
        *,
        name: str,
        path: Path,
        document_path: Path | None = None,
    ) -> MicroserviceView:
        """Create or update a microservice by its unique name."""

        with Session(self.engine) as session:
            row = session.exec(
                select(Microservice).where(Microservice.name == name),
            ).one_or_none()
            if row is None:
                row = Microservice(name=name, path=str(path), created_at=utc_now())
            else:
                row.path = str(path)
            if document_path is not None:
                row.document_path = str(document_path)
                row.document_filename = document_path.name
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_microservice_view(row)

    def get_microservice(self, name: str) -> MicroserviceView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(Microservice).where(Microservice.name == name),
            ).one_or_none()
            return _to_microservice_view(row) if row is not None else None

    def set_excluded(self, *, name: str, excluded: bool) -> None:
        with Session(self.engine) as session:
            row = self._get_microservice_row(session=session, name=name)
            row.excluded = excluded
            session.add(row)
            session.commit()

    def sync_microservices(self, *, directory: Path, pattern: str = "*") -> list[MicroserviceView]:
        """Register every sub-directory matching ``pattern``; return the new ones."""

        if not directory.is_dir():
            raise ValueError(f"Microservices directory does not exist: {directory}")

        added: list[MicroserviceView] = []
        with Session(self.engine) as session:
            known = set(session.exec(select(Microservice.name)).all())
            for child in sorted(directory.iterdir()):
                if not child.is_dir() or child.name.startswith("."):
                    continue
                if not fnmatch.fnmatch(child.name, pattern) or child.name in known:
                    continue
                row = Microservice(name=child.name, path=str(child), created_at=utc_now())
                session.add(row)
                session.flush()
                added.append(_to_microservice_view(row))
                known.add(child.name)
            session.commit()
        logger.info("Registered %d new microservice(s) from %s", len(added), directory)
        return added

    def list_microservices(self, *, include_excluded: bool = True) -> list[MicroserviceView]:
        with Session(self.engine) as session:
            statement = select(Microservice).order_by(col(Microservice.name).asc())
            if not include_excluded:
                statement = statement.where(col(Microservice.excluded).is_(False))
            return [_to_microservice_view(row) for row in session.exec(statement).all()]

    def list_usecases(self, microservice_id: int) -> list[StoredUseCase]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(UseCaseRow)
                .where(UseCaseRow.microservice_id == microservice_id)
                .order_by(col(UseCaseRow.id).asc()),
            ).all()
            return [_to_stored_usecase(row) for row in rows]

    def replace_usecases(self, microservice_id: int, plan: UseCasePlan) -> list[StoredUseCase]:
        """Apply a use case replacement atomically."""

        now = utc_now()
        with Session(self.engine) as session:
            try:
                if plan.delete_usecase_ids:
                    session.exec(
                        sa_delete(UseCaseRow).where(
                            col(UseCaseRow.microservice_id) == microservice_id,
                            col(UseCaseRow.id).in_(plan.delete_usecase_ids),
                        ),
                    )
                rows = [
                    UseCaseRow(
                        microservice_id=microservice_id,
                        code=usecase.code,
                        title=usecase.title,
                        description=usecase.description,
                        actors=usecase.actors,
                        preconditions=usecase.preconditions,
                        main_flow=usecase.main_flow,
                        alternative_flows=usecase.alternative_flows,
                        created_at=now,
                    )
                    for usecase in plan.inserts
                ]
                session.add_all(rows)
                session.commit()
            except SQLAlchemyError as error:
                session.rollback()
                raise ReconciliationFailure(f"Failed to save use cases: {error}") from error
            for row in rows:
                session.refresh(row)
            return [_to_stored_usecase(row) for row in rows]

    def list_results(self, microservice_id: int) -> list[StoredResult]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(AnalysisResultRow)
                .where(AnalysisResultRow.microservice_id == microservice_id)
                .order_by(col(AnalysisResultRow.id).asc()),
            ).all()
            return [_to_stored_result(row) for row in rows]

    def get_result(self, result_id: int) -> StoredResult | None:
        with Session(self.engine) as session:
            row = session.get(AnalysisResultRow, result_id)
            return _to_stored_result(row) if row is not None else None

    def get_usecase(self, usecase_id: int) -> StoredUseCase | None:
        with Session(self.engine) as session:
            row = session.get(UseCaseRow, usecase_id)
            return _to_stored_usecase(row) if row is not None else None

    def apply_analysis_plan(
        self,
        microservice_id: int,
        plan: AnalysisPlan,
        *,
        report_json: str | None = None,
        legacy_path: str | None = None,
    ) -> int:
        """Apply an analysis plan in one transaction; return the number of inserted results."""

        now = utc_now()
        with Session(self.engine) as session:
            try:
                if plan.delete_result_ids:
                    # Results linked after the snapshot was taken stay untouched.
                    session.exec(
                        sa_delete(AnalysisResultRow).where(
                            col(AnalysisResultRow.microservice_id) == microservice_id,
                            col(AnalysisResultRow.id).in_(plan.delete_result_ids),
                            col(AnalysisResultRow.jira_issue_key).is_(None),
                        ),
                    )
                session.add_all(
                    [
                        AnalysisResultRow(
                            microservice_id=microservice_id,
                            usecase_id=write.usecase_id,
                            status=write.status,
                            confidence=write.confidence,
                            evidence=write.evidence,
                            notes=write.notes,
                            issue_code=write.issue_code,
                            issue_json=write.issue_json,
                            analyzed_at=now,
                        )
                        for write in plan.inserts
                    ],
                )
                values: dict[str, object] = {"last_analysis": _to_db_datetime(now)}
                if report_json is not None:
                    values["last_report"] = report_json
                if legacy_path is not None:
                    values["legacy_path"] = legacy_path
                session.exec(
                    sa_update(Microservice)
                    .where(col(Microservice.id) == microservice_id)
                    .values(**values),
                )
                session.commit()
            except SQLAlchemyError as error:
                session.rollback()
                raise ReconciliationFailure(f"Failed to save analysis results: {error}") from error
        return len(plan.inserts)

    def delete_unlinked_result(self, *, result_id: int, microservice_id: int) -> bool:
        """Delete one result only if it still belongs to the microservice and is unlinked."""

        with Session(self.engine) as session:
            try:
                result = session.exec(
                    sa_delete(AnalysisResultRow).where(
                        col(AnalysisResultRow.id) == result_id,
                        col(AnalysisResultRow.microservice_id) == microservice_id,
                        col(AnalysisResultRow.jira_issue_key).is_(None),
                    ),
                )
                session.commit()
            except SQLAlchemyError as error:
                session.rollback()
                raise ReconciliationFailure(f"Failed to delete analysis result: {error}") from error
            return result.rowcount == 1

    def link_tracker_issue(self, *, result_id: int, key: str, summary: str | None = None) -> None:
        """Mark a result as filed in the issue tracker."""

        with Session(self.engine) as session:
            row = session.exec(
                select(AnalysisResultRow).where(AnalysisResultRow.id == result_id),
            ).one_or_none()
            if row is None:
                raise ValueError(f"Analysis result not found: {result_id}")
            row.jira_issue_key = key
            row.jira_issue_summary = summary
            session.add(row)
            session.commit()

    def linked_issues(self, microservice_id: int) -> list[LinkedIssue]:
        """Tracker issues already filed for the microservice."""

        return [
            LinkedIssue(key=result.tracker_key, summary=result.display_title)
            for result in self.list_results(microservice_id)
            if result.tracker_key
        ]

    def _get_microservice_row(self, *, session: Session, name: str) -> Microservice:
        row = session.exec(
            select(Microservice).where(Microservice.name == name),
        ).one_or_none()
        if row is None:
            raise ValueError(f"Microservice not found: {name}")
        return row


def _to_db_datetime(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


def _to_utc_aware_datetime(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _to_microservice_view(row: Microservice) -> MicroserviceView:
    if row.id is None:
        raise ValueError("Microservice row has no primary key")
    return MicroserviceView(
        microservice_id=row.id,
        name=row.name,
        path=row.path,
        document_path=row.document_path,
        legacy_path=row.legacy_path,
        excluded=row.excluded,
        last_analysis=(
            _to_utc_aware_datetime(row.last_analysis) if row.last_analysis is not None else None
        ),
    )


def _to_stored_usecase(row: UseCaseRow) -> StoredUseCase:
    if row.id is None:
        raise ValueError("Use case row has no primary key")
    return StoredUseCase(
        use_case_id=row.id,
        microservice_id=row.microservice_id,
        code=row.code,
        title=row.title,
        description=row.description,
        actors=row.actors,
        preconditions=row.preconditions,
        main_flow=row.main_flow,
        alternative_flows=row.alternative_flows,
    )


def _to_stored_result(row: AnalysisResultRow) -> StoredResult:
    if row.id is None:
        raise ValueError("Analysis result row has no primary key")
    return StoredResult(
        result_id=row.id,
        microservice_id=row.microservice_id,
        usecase_id=row.usecase_id,
        status=row.status,
        confidence=row.confidence,
        evidence=row.evidence,
        notes=row.notes,
        issue_code=row.issue_code,
        tracker_key=row.jira_issue_key,
        tracker_summary=row.jira_issue_summary,
        analyzed_at=_to_utc_aware_datetime(row.analyzed_at),
    )

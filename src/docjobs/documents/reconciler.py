"""Idempotent reconciliation of a run's documents into the document store."""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from datetime import datetime
from pathlib import Path

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, col, select

from docjobs.documents.models import (
    CONTENT_KINDS,
    DocumentKind,
    DocumentView,
    DocumentWrite,
    ReconcileStats,
    derive_source_key,
    normalize_markdown,
)
from docjobs.errors import ReconciliationError
from docjobs.storage.alembic_runner import upgrade_head
from docjobs.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from docjobs.storage.tables import Document

logger = logging.getLogger(__name__)


class DocumentReconciler:
    """Makes a repository's stored documents mirror its latest run.

    Orphan cleanup is repository-scoped: any stored document of the repository
    that the run did not produce is deleted, whichever job wrote it.
    """

    def __init__(
        self,
        db_path: Path,
        *,
        sqlite_busy_timeout_ms: int = 5000,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.db_path = db_path
        self.clock = clock
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        self.engine.dispose()

    def init_schema(self) -> None:
        upgrade_head(self.db_path)

    def reconcile(
        self,
        *,
        job_id: str,
        repository_id: str,
        run_id: str,
        documents: Sequence[DocumentWrite],
    ) -> ReconcileStats:
        """Upsert changed documents and delete orphans in one transaction."""

        stats = ReconcileStats()
        batch: dict[str, DocumentWrite] = {}
        for document in documents:
            if document.kind in CONTENT_KINDS and not document.content.strip():
                stats.rejected += 1
                logger.warning("Rejected empty document: slug=%s", document.slug)
                continue
            source_key = derive_source_key(
                repository_id=repository_id,
                slug=document.slug,
                title=document.title,
            )
            if source_key in batch:
                stats.skipped += 1
                continue
            batch[source_key] = document

        now_db = to_db_datetime(self.clock())
        with Session(self.engine) as session:
            try:
                stored = {
                    row.source_key: row
                    for row in session.exec(
                        select(Document).where(Document.repository_id == repository_id),
                    ).all()
                }
                for source_key, document in batch.items():
                    content = _stored_content(document)
                    row = stored.get(source_key)
                    if row is None:
                        session.add(
                            Document(
                                job_id=job_id,
                                repository_id=repository_id,
                                source_key=source_key,
                                slug=document.slug,
                                title=document.title,
                                kind=document.kind.value,
                                content=content,
                                chapter_index=document.chapter_index,
                                run_id=run_id,
                                created_at=now_db,
                                updated_at=now_db,
                            ),
                        )
                        stats.inserted += 1
                        continue
                    if row.content == content and row.chapter_index == document.chapter_index:
                        stats.skipped += 1
                        continue
                    row.job_id = job_id
                    row.run_id = run_id
                    row.slug = document.slug
                    row.kind = document.kind.value
                    row.content = content
                    row.chapter_index = document.chapter_index
                    row.updated_at = now_db
                    session.add(row)
                    stats.updated += 1

                for source_key, row in stored.items():
                    if source_key not in batch:
                        session.delete(row)
                        stats.deleted += 1
                session.commit()
            except SQLAlchemyError as error:
                session.rollback()
                raise ReconciliationError(
                    f"Document reconciliation failed for job {job_id}: {error}",
                ) from error

        logger.info(
            "Reconciled documents: job_id=%s repository_id=%s run_id=%s %s",
            job_id,
            repository_id,
            run_id,
            " ".join(f"{key}={value}" for key, value in stats.as_dict().items()),
        )
        return stats

    def list_documents(self, *, repository_id: str) -> list[DocumentView]:
        """Stored documents of a repository in display order."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(Document)
                .where(Document.repository_id == repository_id)
                .order_by(
                    col(Document.kind).asc(),
                    col(Document.chapter_index).asc(),
                    col(Document.slug).asc(),
                ),
            ).all()
        return [_to_document_view(row) for row in rows]


def _stored_content(document: DocumentWrite) -> str:
    if document.kind == DocumentKind.DATA:
        return document.content
    return normalize_markdown(document.content)


def _to_document_view(row: Document) -> DocumentView:
    return DocumentView(
        document_id=row.id or 0,
        job_id=row.job_id,
        repository_id=row.repository_id,
        source_key=row.source_key,
        slug=row.slug,
        title=row.title,
        kind=DocumentKind(row.kind),
        content=row.content,
        chapter_index=row.chapter_index,
        run_id=row.run_id,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )

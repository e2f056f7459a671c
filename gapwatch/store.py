"""Document store over the ``store_items`` table, plus typed repository helpers.

Items are addressed by ``(pk, sk)``; ``gsi1``/``gsi2`` are the two secondary
indexes. Every write commits immediately unless it runs inside
``DocumentStore.transaction()``. Writes that must not lose a concurrent update
go through ``update(..., expected_version=...)``.
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterator, Literal

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from gapwatch.errors import AssessmentNotFound, VersionConflict
from gapwatch.models import StoreItem
from gapwatch.schemas import (
    Assessment,
    AssessmentGap,
    GapAnalysis,
    GapCategory,
    ResolutionMethod,
    TimelineExtension,
    TimelinePauseEvent,
)

log = logging.getLogger(__name__)

IndexName = Literal["table", "gsi1", "gsi2"]
IndexKey = tuple[str, str]


@dataclass
class Item:
    pk: str
    sk: str
    data: dict[str, Any]
    version: int
    entity_type: str = ""


def _to_item(row: StoreItem) -> Item:
    return Item(pk=row.pk, sk=row.sk, data=dict(row.data or {}), version=row.version,
                entity_type=row.entity_type)


# ---------------------------------------------------------------------------
# Generic document store
# ---------------------------------------------------------------------------


class DocumentStore:
    def __init__(self, session: Session):
        self.session = session
        self._depth = 0

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Group several writes into one commit; nested use joins the outer one."""
        self._depth += 1
        try:
            yield
        except Exception:
            self._depth -= 1
            if self._depth == 0:
                self.session.rollback()
            raise
        self._depth -= 1
        self._commit()

    def _commit(self) -> None:
        if self._depth > 0:
            self.session.flush()
            return
        try:
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

    def _row(self, pk: str, sk: str) -> StoreItem | None:
        stmt = (
            select(StoreItem)
            .where(StoreItem.pk == pk, StoreItem.sk == sk)
            .execution_options(populate_existing=True)
        )
        return self.session.execute(stmt).scalars().first()

    @staticmethod
    def _apply_indexes(row: StoreItem, gsi1: IndexKey | None, gsi2: IndexKey | None) -> None:
        if gsi1 is not None:
            row.gsi1pk, row.gsi1sk = gsi1
        if gsi2 is not None:
            row.gsi2pk, row.gsi2sk = gsi2

    def get(self, pk: str, sk: str) -> Item | None:
        row = self._row(pk, sk)
        return _to_item(row) if row is not None else None

    def put(
        self,
        pk: str,
        sk: str,
        data: dict[str, Any],
        *,
        entity_type: str = "",
        gsi1: IndexKey | None = None,
        gsi2: IndexKey | None = None,
    ) -> Item:
        """Create or overwrite an item."""
        row = self._row(pk, sk)
        if row is None:
            row = StoreItem(pk=pk, sk=sk, version=1)
            self.session.add(row)
        else:
            row.version += 1
        row.data = data
        row.entity_type = entity_type
        self._apply_indexes(row, gsi1, gsi2)
        self._commit()
        return _to_item(row)

    def put_if_absent(
        self,
        pk: str,
        sk: str,
        data: dict[str, Any],
        *,
        entity_type: str = "",
        gsi1: IndexKey | None = None,
        gsi2: IndexKey | None = None,
    ) -> bool:
        """Create an item only if ``(pk, sk)`` is free. Returns False if taken."""
        if self._row(pk, sk) is not None:
            return False
        row = StoreItem(pk=pk, sk=sk, version=1, data=data, entity_type=entity_type)
        self._apply_indexes(row, gsi1, gsi2)
        self.session.add(row)
        try:
            self._commit()
        except IntegrityError:
            # Lost the race against a writer in another session
            log.info("put_if_absent lost race on %s/%s", pk, sk)
            return False
        return True

    def update(
        self,
        pk: str,
        sk: str,
        patch: dict[str, Any],
        *,
        expected_version: int | None = None,
        gsi1: IndexKey | None = None,
        gsi2: IndexKey | None = None,
    ) -> Item:
        """Merge *patch* into an item's data as one conditional write.

        The write only lands if the stored version still equals
        *expected_version* (or the version read here when none is given);
        otherwise ``VersionConflict`` is raised and nothing changes.
        """
        current = self._row(pk, sk)
        if current is None:
            raise KeyError(f"{pk}/{sk}")
        version = current.version if expected_version is None else expected_version
        values: dict[str, Any] = {"data": {**(current.data or {}), **patch}, "version": version + 1}
        if gsi1 is not None:
            values["gsi1pk"], values["gsi1sk"] = gsi1
        if gsi2 is not None:
            values["gsi2pk"], values["gsi2sk"] = gsi2
        stmt = (
            update(StoreItem)
            .where(StoreItem.pk == pk, StoreItem.sk == sk, StoreItem.version == version)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = self.session.execute(stmt)
        if result.rowcount == 0:
            if self._depth == 0:
                self.session.rollback()
            raise VersionConflict(
                f"{pk}/{sk} changed concurrently (expected version {version})",
                {"pk": pk, "sk": sk, "expected_version": version},
            )
        self._commit()
        row = self._row(pk, sk)
        if row is None:
            raise KeyError(f"{pk}/{sk}")
        return _to_item(row)

    def delete(self, pk: str, sk: str) -> None:
        self.session.execute(delete(StoreItem).where(StoreItem.pk == pk, StoreItem.sk == sk))
        self._commit()

    def query(
        self,
        index: IndexName,
        key: str,
        *,
        sk_prefix: str | None = None,
        sk_equals: str | None = None,
        partition: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[Item]:
        """Query the table or one of the secondary indexes by partition key.

        ``sk_equals`` and ``partition`` filter on the item's own table keys,
        which lets an index query be narrowed to one owner.
        """
        if index == "gsi1":
            pk_col, sk_col = StoreItem.gsi1pk, StoreItem.gsi1sk
        elif index == "gsi2":
            pk_col, sk_col = StoreItem.gsi2pk, StoreItem.gsi2sk
        else:
            pk_col, sk_col = StoreItem.pk, StoreItem.sk
        stmt = select(StoreItem).where(pk_col == key).execution_options(populate_existing=True)
        if sk_prefix:
            stmt = stmt.where(sk_col.startswith(sk_prefix, autoescape=True))
        if sk_equals is not None:
            stmt = stmt.where(StoreItem.sk == sk_equals)
        if partition is not None:
            stmt = stmt.where(StoreItem.pk == partition)
        stmt = stmt.order_by(sk_col.desc() if descending else sk_col.asc())
        if limit is not None:
            stmt = stmt.limit(limit)
        return [_to_item(r) for r in self.session.execute(stmt).scalars().all()]


# ---------------------------------------------------------------------------
# Typed repository
# ---------------------------------------------------------------------------

METADATA_SK = "METADATA"
ACTIVE_PAUSE_SK = "PAUSE#ACTIVE"


def assessment_pk(assessment_id: str) -> str:
    return f"ASSESSMENT#{assessment_id}"


def _iso(value: Any) -> str:
    return value.isoformat() if value is not None else ""


class Repository:
    """Typed access to assessments, gaps, pause events and extensions."""

    def __init__(self, store: DocumentStore):
        self.store = store

    # -- assessments --------------------------------------------------------

    def _assessment_indexes(self, a: Assessment) -> tuple[IndexKey, IndexKey]:
        created = _iso(a.created_at)
        return (
            (f"COMPANY#{a.company_id}", f"ASSESSMENT#{created}"),
            (f"STATUS#{a.status.value}", f"ASSESSMENT#{created}"),
        )

    def put_assessment(self, a: Assessment) -> Assessment:
        gsi1, gsi2 = self._assessment_indexes(a)
        self.store.put(assessment_pk(a.id), METADATA_SK, a.model_dump(mode="json"),
                       entity_type="assessment", gsi1=gsi1, gsi2=gsi2)
        return a

    def get_assessment_versioned(self, assessment_id: str) -> tuple[Assessment, int]:
        item = self.store.get(assessment_pk(assessment_id), METADATA_SK)
        if item is None:
            raise AssessmentNotFound(assessment_id)
        return Assessment.model_validate(item.data), item.version

    def get_assessment(self, assessment_id: str) -> Assessment:
        return self.get_assessment_versioned(assessment_id)[0]

    def save_assessment(self, a: Assessment, expected_version: int | None = None) -> int:
        """Write the whole assessment back, conditional on *expected_version*."""
        gsi1, gsi2 = self._assessment_indexes(a)
        item = self.store.update(assessment_pk(a.id), METADATA_SK, a.model_dump(mode="json"),
                                 expected_version=expected_version, gsi1=gsi1, gsi2=gsi2)
        return item.version

    def save_gap_analysis(self, assessment_id: str, analysis: GapAnalysis) -> None:
        self.store.update(assessment_pk(assessment_id), METADATA_SK,
                          {"gap_analysis": analysis.model_dump(mode="json")})

    def list_assessments_by_status(self, status: str, limit: int = 50) -> list[Assessment]:
        items = self.store.query("gsi2", f"STATUS#{status}", descending=True, limit=limit)
        return [Assessment.model_validate(i.data) for i in items]

    # -- gaps ---------------------------------------------------------------

    @staticmethod
    def _gap_indexes(gap: AssessmentGap) -> tuple[IndexKey, IndexKey]:
        detected = _iso(gap.detected_at)
        state = "resolved" if gap.resolved else "pending"
        return (
            (f"GAP#{gap.category.value}", f"PRIORITY#{gap.priority:02d}#{detected}"),
            (f"GAP#{state}", f"CREATED#{detected}"),
        )

    def put_gap(self, gap: AssessmentGap) -> None:
        gsi1, gsi2 = self._gap_indexes(gap)
        self.store.put(assessment_pk(gap.assessment_id), f"GAP#{gap.gap_id}",
                       gap.model_dump(mode="json"), entity_type="gap", gsi1=gsi1, gsi2=gsi2)

    def put_gaps(self, gaps: list[AssessmentGap]) -> None:
        with self.store.transaction():
            for gap in gaps:
                self.put_gap(gap)

    def get_pending_gap(self, gap_id: str) -> AssessmentGap | None:
        """Find a gap by id among pending gaps only; resolved gaps are invisible."""
        found = self.get_pending_gap_versioned(gap_id)
        return found[0] if found else None

    def get_pending_gap_versioned(self, gap_id: str) -> tuple[AssessmentGap, int] | None:
        items = self.store.query("gsi2", "GAP#pending", sk_equals=f"GAP#{gap_id}", limit=1)
        if not items:
            return None
        return AssessmentGap.model_validate(items[0].data), items[0].version

    def mark_gap_resolved(self, gap: AssessmentGap, expected_version: int) -> None:
        """Write the resolved gap, conditional on it still being the pending version read."""
        gsi1, gsi2 = self._gap_indexes(gap)
        self.store.update(assessment_pk(gap.assessment_id), f"GAP#{gap.gap_id}", gap.model_dump(mode="json"),
                          expected_version=expected_version, gsi1=gsi1, gsi2=gsi2)

    def list_gaps(
        self,
        assessment_id: str,
        category: GapCategory | None = None,
        status: str = "pending",
        limit: int = 50,
    ) -> list[AssessmentGap]:
        pk = assessment_pk(assessment_id)
        if category is not None:
            items = self.store.query("gsi1", f"GAP#{category.value}", partition=pk, descending=True)
            gaps = [AssessmentGap.model_validate(i.data) for i in items]
            gaps = [g for g in gaps if g.resolved == (status == "resolved")]
        else:
            items = self.store.query("gsi2", f"GAP#{status}", partition=pk, descending=True)
            gaps = [AssessmentGap.model_validate(i.data) for i in items]
        return gaps[:limit]

    def supersede_pending_gaps(self, assessment_id: str, keep: set[str], resolved_at: datetime) -> list[str]:
        """Auto-resolve every pending gap not in *keep*. Returns the ids closed."""
        pk = assessment_pk(assessment_id)
        closed = []
        with self.store.transaction():
            for item in self.store.query("gsi2", "GAP#pending", partition=pk):
                gap = AssessmentGap.model_validate(item.data)
                if gap.gap_id in keep:
                    continue
                gap.resolved = True
                gap.resolved_at = resolved_at
                gap.resolution_method = ResolutionMethod.AUTO_RESOLVED
                gsi1, gsi2 = self._gap_indexes(gap)
                self.store.update(pk, item.sk, gap.model_dump(mode="json"),
                                  expected_version=item.version, gsi1=gsi1, gsi2=gsi2)
                closed.append(gap.gap_id)
        return closed

    def resolved_gap_ids(self, assessment_id: str) -> set[str]:
        items = self.store.query("gsi2", "GAP#resolved", partition=assessment_pk(assessment_id))
        return {i.data["gap_id"] for i in items}

    # -- pause events -------------------------------------------------------

    def get_active_pause(self, assessment_id: str) -> TimelinePauseEvent | None:
        item = self.store.get(assessment_pk(assessment_id), ACTIVE_PAUSE_SK)
        return TimelinePauseEvent.model_validate(item.data) if item else None

    def create_active_pause(self, event: TimelinePauseEvent) -> bool:
        """Create the active pause only if none exists. Returns False otherwise."""
        return self.store.put_if_absent(
            assessment_pk(event.assessment_id), ACTIVE_PAUSE_SK, event.model_dump(mode="json"),
            entity_type="pause",
            gsi2=("PAUSE#active", f"PAUSED#{_iso(event.paused_at)}"),
        )

    def replace_active_pause(self, event: TimelinePauseEvent) -> None:
        self.store.put(assessment_pk(event.assessment_id), ACTIVE_PAUSE_SK, event.model_dump(mode="json"),
                       entity_type="pause",
                       gsi2=("PAUSE#active", f"PAUSED#{_iso(event.paused_at)}"))

    def close_pause(self, event: TimelinePauseEvent) -> None:
        """Move the active pause into the closed history; the record is kept."""
        pk = assessment_pk(event.assessment_id)
        with self.store.transaction():
            self.store.put(pk, f"PAUSE#{_iso(event.paused_at)}", event.model_dump(mode="json"),
                           entity_type="pause",
                           gsi2=("PAUSE#closed", f"PAUSED#{_iso(event.paused_at)}"))
            self.store.delete(pk, ACTIVE_PAUSE_SK)

    def list_pauses(self, assessment_id: str) -> list[TimelinePauseEvent]:
        items = self.store.query("table", assessment_pk(assessment_id), sk_prefix="PAUSE#")
        return [TimelinePauseEvent.model_validate(i.data) for i in items]

    # -- extensions ---------------------------------------------------------

    def put_extension(self, ext: TimelineExtension) -> None:
        self.store.put(assessment_pk(ext.assessment_id), f"EXTENSION#{ext.extension_id}",
                       ext.model_dump(mode="json"), entity_type="extension",
                       gsi2=(f"EXTENSION#{'approved' if ext.approved_by else 'pending'}",
                             f"REQUESTED#{_iso(ext.requested_at)}"))

    def get_extension(self, assessment_id: str, extension_id: str) -> TimelineExtension | None:
        item = self.store.get(assessment_pk(assessment_id), f"EXTENSION#{extension_id}")
        return TimelineExtension.model_validate(item.data) if item else None

    def list_extensions(self, assessment_id: str) -> list[TimelineExtension]:
        items = self.store.query("table", assessment_pk(assessment_id), sk_prefix="EXTENSION#")
        exts = [TimelineExtension.model_validate(i.data) for i in items]
        return sorted(exts, key=lambda e: e.requested_at)

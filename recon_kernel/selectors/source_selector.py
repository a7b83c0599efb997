"""
Source pools and match state, read side.

Loads the raw records of each source for a company and answers "is this
record already matched against that source?" from persisted Matches.
Both the coordinator and the exceptions engine read through here so that
they agree on what counts as matched.
"""

from collections import Counter
from dataclasses import dataclass

from sqlalchemy import func, select

from recon_kernel.domain.records import SourceType
from recon_kernel.models.match import Match
from recon_kernel.models.reconciliation_exception import ExceptionStatus, ReconciliationException
from recon_kernel.models.source_record import SourceRecord
from recon_kernel.selectors.base import BaseSelector


@dataclass(frozen=True)
class RawSourceRecord:
    """Raw record DTO.  ``raw`` is a copy owned by the caller."""

    source_type: str
    source_ref: str
    raw: dict
    external_ref: str | None
    object_type: str | None


class MatchedRefs:
    """
    Index of persisted links, queryable from either side.

    A link is (left_type, left_ref, right_type, right_ref).  Lookups are
    symmetric: ``counterpart("bank", "txn_1", "payout")`` finds the payout
    a bank transaction was matched to.
    """

    def __init__(self, links=()):
        self._index: dict[tuple[str, str, str], str] = {}
        for left_type, left_ref, right_type, right_ref in links:
            self.add(left_type, left_ref, right_type, right_ref)

    def add(self, left_type: str, left_ref: str, right_type: str, right_ref: str) -> None:
        self._index[(left_type, left_ref, right_type)] = right_ref
        self._index[(right_type, right_ref, left_type)] = left_ref

    def counterpart(self, ref_type, ref: str, counterpart_type) -> str | None:
        return self._index.get((_value(ref_type), ref, _value(counterpart_type)))

    def is_matched(self, ref_type, ref: str, counterpart_type=None) -> bool:
        ref_type = _value(ref_type)
        if counterpart_type is not None:
            return (ref_type, ref, _value(counterpart_type)) in self._index
        return any(
            (ref_type, ref, other.value) in self._index
            for other in SourceType
            if other.value != ref_type
        )

    def refs(self, ref_type, counterpart_type) -> set[str]:
        ref_type, counterpart_type = _value(ref_type), _value(counterpart_type)
        return {
            ref for (t, ref, c) in self._index
            if t == ref_type and c == counterpart_type
        }

    def __len__(self) -> int:
        return len(self._index) // 2


def _value(source_type) -> str:
    return getattr(source_type, "value", source_type)


class SourceSelector(BaseSelector):
    """Read access to source pools, matches and open exception counts."""

    def load_pool(self, company_id: str, source_type: SourceType | str) -> list[RawSourceRecord]:
        """All raw records of one source, ordered by source_ref."""
        rows = self.session.execute(
            select(SourceRecord)
            .where(
                SourceRecord.company_id == company_id,
                SourceRecord.source_type == _value(source_type),
            )
            .order_by(SourceRecord.source_ref)
        ).scalars().all()
        return [
            RawSourceRecord(
                source_type=row.source_type,
                source_ref=row.source_ref,
                raw=dict(row.raw),
                external_ref=row.external_ref,
                object_type=row.object_type,
            )
            for row in rows
        ]

    def matched_refs(self, company_id: str) -> MatchedRefs:
        rows = self.session.execute(
            select(Match.left_type, Match.left_ref, Match.right_type, Match.right_ref)
            .where(Match.company_id == company_id)
        ).all()
        return MatchedRefs(tuple(row) for row in rows)

    def match_counts_by_strategy(self, company_id: str) -> dict[str, int]:
        rows = self.session.execute(
            select(Match.strategy, func.count())
            .where(Match.company_id == company_id)
            .group_by(Match.strategy)
        ).all()
        return {strategy: count for strategy, count in sorted(rows)}

    def open_exception_counts(self, company_id: str) -> tuple[dict[str, int], dict[str, int]]:
        """(counts by type, counts by severity) over open exceptions."""
        rows = self.session.execute(
            select(ReconciliationException.type, ReconciliationException.severity)
            .where(
                ReconciliationException.company_id == company_id,
                ReconciliationException.status == ExceptionStatus.OPEN.value,
            )
        ).all()
        by_type = Counter(row[0] for row in rows)
        by_severity = Counter(row[1] for row in rows)
        return dict(sorted(by_type.items())), dict(sorted(by_severity.items()))

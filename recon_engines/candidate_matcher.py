"""
recon_engines.candidate_matcher -- Candidate generation, scoring and the
match decision policy.

Responsibility:
    For one source record, find the target records that could represent
    the same economic event, score each with the confidence formula and
    decide between auto-match, ambiguous and missing.

Architecture position:
    Engines -- pure calculation layer, zero I/O.  Safe to run on a thread
    pool: no shared mutable state, no clock.

Invariants enforced:
    - One confidence formula: amount 0.40, currency 0.20, date 0.30,
      description 0.10, rounded to 4 decimals.  Exact agreement on amount,
      currency and calendar date scores 1.0.
    - Candidate order is total and deterministic: confidence descending,
      then earliest date, then source_ref.
    - An auto-match requires a UNIQUE candidate at or above the auto
      threshold; two or more such candidates are ambiguous.

Failure modes:
    - None raised.  Empty pools produce a "missing" decision.

Audit relevance:
    Decision evidence (top candidates, best confidence, search window) is
    stored verbatim on the resulting exception and is free of timestamps.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any

from recon_engines.normalization import description_tokens
from recon_engines.tracer import traced_engine
from recon_kernel.domain.records import (
    MatchCandidate,
    MatchThresholds,
    NormalizedRecord,
    ToleranceWindow,
)

WEIGHT_AMOUNT = 0.40
WEIGHT_CURRENCY = 0.20
WEIGHT_DATE = 0.30
WEIGHT_DESCRIPTION = 0.10

# (max days apart, score)
DATE_SCORE_STEPS: tuple[tuple[int, float], ...] = (
    (0, 1.0),
    (1, 0.95),
    (2, 0.85),
    (3, 0.7),
    (7, 0.5),
)

EXACT_CHECKS = ("exact_amount", "exact_currency", "exact_date")

TOP_CANDIDATES_IN_EVIDENCE = 3


class CandidatePool:
    """
    Target records indexed by (currency, date) and by exact bucket key.

    The pool is read-only once built and may be shared between threads.
    """

    def __init__(self, records: Iterable[NormalizedRecord] = ()):
        self._records: list[NormalizedRecord] = []
        self._by_day: dict[tuple[str, date], list[NormalizedRecord]] = defaultdict(list)
        self._by_bucket: dict[str, list[NormalizedRecord]] = defaultdict(list)
        for record in records:
            self._records.append(record)
            self._by_day[(record.currency, record.date)].append(record)
            self._by_bucket[record.primary_bucket_key].append(record)

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self):
        return iter(self._records)

    def in_window(self, currency: str, start: date, end: date) -> list[NormalizedRecord]:
        found: list[NormalizedRecord] = []
        day = start
        while day <= end:
            found.extend(self._by_day.get((currency, day), ()))
            day += timedelta(days=1)
        return found

    def exact_amount(self, source: NormalizedRecord) -> list[NormalizedRecord]:
        """Targets with the same amount and currency within the bucket span."""
        found: list[NormalizedRecord] = []
        for key in sorted(source.bucket_keys):
            found.extend(self._by_bucket.get(key, ()))
        return found


def amount_score(delta_minor_units: int, tolerance: Decimal) -> float:
    if delta_minor_units <= tolerance:
        return 1.0
    if delta_minor_units <= tolerance * 2:
        return 0.8
    if delta_minor_units <= tolerance * 3:
        return 0.6
    return 0.0


def date_score(days_apart: int) -> float:
    for max_days, score in DATE_SCORE_STEPS:
        if days_apart <= max_days:
            return score
    return 0.0


def description_score(source: NormalizedRecord, target: NormalizedRecord) -> float:
    """Shared words and keywords over the larger of the two sets."""
    if not source.description or not target.description:
        return 0.5
    left = description_tokens(source.description) | source.keywords
    right = description_tokens(target.description) | target.keywords
    if not left or not right:
        return 0.5
    return len(left & right) / max(len(left), len(right))


def score(
    source: NormalizedRecord,
    target: NormalizedRecord,
    tolerance: ToleranceWindow,
) -> MatchCandidate:
    """Score ``target`` as a candidate for ``source``."""
    delta = abs(source.amount_minor_units - target.amount_minor_units)
    days_apart = abs((source.date - target.date).days)
    same_currency = source.currency == target.currency

    if delta == 0 and same_currency and days_apart == 0:
        return MatchCandidate(
            record=target,
            confidence=1.0,
            reasons=("amount, currency and date agree exactly",),
            checks=EXACT_CHECKS,
        )

    amount_tolerance = tolerance.amount_tolerance(source.amount_minor_units)
    amount_part = amount_score(delta, amount_tolerance)
    currency_part = 1.0 if same_currency else 0.0
    date_part = date_score(days_apart)
    description_part = description_score(source, target)

    confidence = round(
        WEIGHT_AMOUNT * amount_part
        + WEIGHT_CURRENCY * currency_part
        + WEIGHT_DATE * date_part
        + WEIGHT_DESCRIPTION * description_part,
        4,
    )

    checks: list[str] = []
    if delta == 0:
        checks.append("exact_amount")
    if delta <= amount_tolerance:
        checks.append("amount_within_tolerance")
    if same_currency:
        checks.append("exact_currency")
    if days_apart == 0:
        checks.append("exact_date")
    if days_apart <= tolerance.date_days:
        checks.append("date_within_window")

    reasons = (
        f"amount delta {delta} minor units (tolerance {amount_tolerance})",
        f"date delta {days_apart} day(s)",
        f"description similarity {description_part:.2f}",
    )
    return MatchCandidate(
        record=target,
        confidence=confidence,
        reasons=reasons,
        checks=tuple(checks),
    )


def candidate_sort_key(candidate: MatchCandidate) -> tuple:
    return (-candidate.confidence, candidate.record.date, candidate.record.source_ref)


@dataclass(frozen=True)
class CandidateSearch:
    """
    Every scored in-window target for one source, best first.

    ``scored`` keeps candidates below the ambiguous floor so that the best
    observed confidence is known even when nothing qualifies.
    """

    source: NormalizedRecord
    scored: tuple[MatchCandidate, ...]
    ambiguous_floor: float
    window: dict[str, Any] = field(default_factory=dict)

    @property
    def candidates(self) -> list[MatchCandidate]:
        return [c for c in self.scored if c.confidence >= self.ambiguous_floor]

    @property
    def best_observed(self) -> float:
        return self.scored[0].confidence if self.scored else 0.0

    def excluding(self, refs: set[str] | frozenset[str]) -> CandidateSearch:
        """Same search with already-consumed targets removed."""
        if not refs:
            return self
        return CandidateSearch(
            source=self.source,
            scored=tuple(c for c in self.scored if c.record.source_ref not in refs),
            ambiguous_floor=self.ambiguous_floor,
            window=self.window,
        )


def search_window(source: NormalizedRecord, tolerance: ToleranceWindow) -> dict[str, Any]:
    return {
        **tolerance.to_evidence(),
        "currency": source.currency,
        "date_from": (source.date - timedelta(days=tolerance.date_days)).isoformat(),
        "date_to": (source.date + timedelta(days=tolerance.date_days)).isoformat(),
        "amount_tolerance_minor_units": str(tolerance.amount_tolerance(source.amount_minor_units)),
    }


@traced_engine("candidate_matcher", "1.0")
def search_candidates(
    source: NormalizedRecord,
    pool: CandidatePool,
    tolerance: ToleranceWindow,
    thresholds: MatchThresholds,
) -> CandidateSearch:
    """
    Score every target in the window of ``source``.

    The window is: same currency, date within ``tolerance.date_days`` and
    ``|amount delta| <= tolerance.amount_tolerance(source.amount)``.
    """
    start = source.date - timedelta(days=tolerance.date_days)
    end = source.date + timedelta(days=tolerance.date_days)
    amount_tolerance = tolerance.amount_tolerance(source.amount_minor_units)

    seen: set[str] = set()
    scored: list[MatchCandidate] = []
    for target in pool.exact_amount(source) + pool.in_window(source.currency, start, end):
        if target.source_ref in seen:
            continue
        seen.add(target.source_ref)
        if not start <= target.date <= end:
            continue
        if abs(source.amount_minor_units - target.amount_minor_units) > amount_tolerance:
            continue
        scored.append(score(source, target, tolerance))

    scored.sort(key=candidate_sort_key)
    return CandidateSearch(
        source=source,
        scored=tuple(scored),
        ambiguous_floor=thresholds.ambiguous,
        window=search_window(source, tolerance),
    )


def find_candidates(
    source: NormalizedRecord,
    pool: CandidatePool,
    tolerance: ToleranceWindow,
    thresholds: MatchThresholds | None = None,
) -> list[MatchCandidate]:
    """In-window candidates at or above the ambiguous threshold, best first."""
    return search_candidates(source, pool, tolerance, thresholds or MatchThresholds()).candidates


class DecisionKind(str, Enum):
    AUTO_MATCH = "auto_match"
    AMBIGUOUS = "ambiguous"
    MISSING = "missing"


@dataclass(frozen=True)
class MatchDecision:
    kind: DecisionKind
    confidence: float
    evidence: dict[str, Any]
    candidate: MatchCandidate | None = None
    strategy: str | None = None


def decide(
    candidates: list[MatchCandidate],
    thresholds: MatchThresholds,
    best_observed: float = 0.0,
    pass_name: str = "payout_bank",
    window: dict[str, Any] | None = None,
) -> MatchDecision:
    """
    Classify a sorted candidate list.

    - auto_match: the best candidate reaches ``thresholds.auto_match`` and
      is the only one that does.
    - ambiguous: the best candidate is in [ambiguous, auto_match), or
      several reach auto_match.
    - missing: no candidate reaches ``thresholds.ambiguous``.
    """
    ordered = sorted(candidates, key=candidate_sort_key)
    qualifying = [c for c in ordered if c.confidence >= thresholds.ambiguous]

    if not qualifying:
        return MatchDecision(
            kind=DecisionKind.MISSING,
            confidence=round(best_observed, 4),
            evidence={
                "search_window": window or {},
                "best_confidence": round(best_observed, 4),
                "candidate_count": 0,
            },
        )

    best = qualifying[0]
    at_auto = [c for c in qualifying if c.confidence >= thresholds.auto_match]

    if len(at_auto) == 1:
        suffix = "exact" if best.is_exact else "fuzzy"
        return MatchDecision(
            kind=DecisionKind.AUTO_MATCH,
            confidence=best.confidence,
            candidate=best,
            strategy=f"{pass_name}_{suffix}",
            evidence={
                "confidence": best.confidence,
                "reasons": list(best.reasons),
                "checks": list(best.checks),
            },
        )

    return MatchDecision(
        kind=DecisionKind.AMBIGUOUS,
        confidence=best.confidence,
        evidence={
            "candidates": [c.to_evidence() for c in qualifying[:TOP_CANDIDATES_IN_EVIDENCE]],
            "best_confidence": best.confidence,
            "candidate_count": len(qualifying),
        },
    )


def decide_search(search: CandidateSearch, thresholds: MatchThresholds, pass_name: str = "payout_bank") -> MatchDecision:
    return decide(
        search.candidates,
        thresholds,
        best_observed=search.best_observed,
        pass_name=pass_name,
        window=search.window,
    )

"""
recon_services.exceptions_engine -- Full exception sweep for one company.

Responsibility:
    Regenerate the open system exceptions of a company from its current
    match state: clear them, classify every record no match explains, and
    record one exception per problem.  Operator decisions (resolved /
    ignored) and manually raised exceptions are never touched.

Architecture position:
    Services -- imperative shell.  Classification tables live in
    recon_engines.exception_rules; persistence goes through the kernel
    ExceptionStore.

Invariants enforced:
    - Fixed precedence per pool: payout (bank, then ledger), bank
      (foreign currency, cash deposit, unmatched), ledger (foreign currency,
      unmatched).
    - A record whose fingerprint already carries a terminal exception is
      not raised again.
    - Idempotent: re-running on unchanged state yields the same set of
      (type, entity_refs, evidence).

Failure modes:
    - Per-record failures (unreadable raw record, write failure) are
      collected in ``ExceptionSweepResult.errors``; the sweep carries on.

Audit relevance:
    Emits ``exceptions_cleared`` and one ``exceptions_generated`` event per
    sweep, plus ``exception_created`` for each new exception.
"""

from __future__ import annotations

from collections import Counter

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from recon_config import CompanySettings
from recon_engines.candidate_matcher import CandidatePool, decide_search, search_candidates
from recon_engines.exception_rules import (
    FxRateLookup,
    build_draft,
    classify_unmatched_bank,
    classify_unmatched_ledger,
    entity_refs_for,
    multi_currency_evidence,
    payout_bank_draft,
    payout_missing_in_ledger_draft,
)
from recon_engines.normalization import normalize_pool
from recon_kernel.domain.clock import Clock, SystemClock
from recon_kernel.domain.exception_types import ExceptionDraft, ExceptionType
from recon_kernel.domain.records import NormalizedRecord, SourceType
from recon_kernel.exceptions import ReconciliationError
from recon_kernel.logging_config import get_logger
from recon_kernel.models.audit_event import AuditVerb
from recon_kernel.selectors.source_selector import MatchedRefs, SourceSelector
from recon_kernel.services.auditor_service import SYSTEM_ACTOR_ID, AuditorService
from recon_kernel.services.exception_store import ExceptionStore
from recon_services._run_types import ExceptionSweepResult, RunError
from recon_services.ledger_linker import LedgerLinker

logger = get_logger("services.exceptions_engine")

SWEEP_ENTITY = "exception_sweep"
STAGE = "sweep"


class ExceptionsEngine:
    """
    Rebuilds a company's open system exceptions.

    Contract:
        ``generate_exceptions`` flushes only.  ``matched_refs`` lets the
        coordinator pass the match state it already holds; when omitted it
        is read from persisted Matches.

    Non-goals:
        Ranking or routing exceptions to operators.
    """

    def __init__(
        self,
        session: Session,
        settings: CompanySettings,
        clock: Clock | None = None,
        fx_lookup: FxRateLookup | None = None,
        ledger_linker: LedgerLinker | None = None,
        auditor: AuditorService | None = None,
    ):
        self._session = session
        self._settings = settings
        self._clock = clock or SystemClock()
        self._fx_lookup = fx_lookup
        self._auditor = auditor or AuditorService(session, self._clock)
        self._store = ExceptionStore(session, self._clock, self._auditor)
        self._selector = SourceSelector(session)
        self._linker = ledger_linker or LedgerLinker(session, settings, self._clock)

    def _load(
        self,
        company_id: str,
        source_type: SourceType,
        result: ExceptionSweepResult,
    ) -> list[NormalizedRecord]:
        pool = self._selector.load_pool(company_id, source_type)
        normalized = normalize_pool(
            ((r.source_ref, r.raw) for r in pool),
            source_type,
            home_currency=self._settings.home_currency,
        )
        for source_ref, exc in normalized.errors:
            result.errors.append(RunError(STAGE, source_ref, exc.code, str(exc)))
        return normalized.records

    def _payout_drafts(
        self,
        payouts: list[NormalizedRecord],
        banks: list[NormalizedRecord],
        matched: MatchedRefs,
    ) -> list[ExceptionDraft]:
        tolerance = self._settings.tolerance()
        thresholds = self._settings.thresholds()
        bank_by_ref = {b.source_ref: b for b in banks}
        unconsumed = CandidatePool(
            b for b in banks if not matched.is_matched(SourceType.BANK, b.source_ref, SourceType.PAYOUT)
        )

        drafts: list[ExceptionDraft] = []
        for payout in payouts:
            bank_ref = matched.counterpart(SourceType.PAYOUT, payout.source_ref, SourceType.BANK)
            if bank_ref is None:
                search = search_candidates(payout, unconsumed, tolerance, thresholds)
                drafts.append(
                    payout_bank_draft(payout, decide_search(search, thresholds), window=search.window)
                )
            elif not matched.is_matched(SourceType.PAYOUT, payout.source_ref, SourceType.LEDGER):
                bank = bank_by_ref.get(bank_ref)
                proposal = self._linker.propose_creation(payout, counterpart=bank)
                drafts.append(payout_missing_in_ledger_draft(payout, bank, proposal))
        return drafts

    def _unmatched_drafts(
        self,
        records: list[NormalizedRecord],
        matched: MatchedRefs,
    ) -> list[ExceptionDraft]:
        home = self._settings.home_currency
        drafts: list[ExceptionDraft] = []
        for record in records:
            if matched.is_matched(record.source_type, record.source_ref):
                continue
            if record.source_type is SourceType.BANK:
                exception_type = classify_unmatched_bank(record, home)
            else:
                exception_type = classify_unmatched_ledger(record, home)

            extra = None
            proposal = None
            if exception_type is ExceptionType.MULTI_CURRENCY_REVIEW:
                extra = multi_currency_evidence(record, home, self._fx_lookup)
            elif exception_type is ExceptionType.CASH_DEPOSIT_DETECTED:
                proposal = self._linker.propose_creation(record)
            elif record.source_type is SourceType.LEDGER and record.object_type:
                extra = {"object_type": record.object_type}

            drafts.append(
                build_draft(
                    exception_type,
                    record,
                    entity_refs_for(record),
                    extra_evidence=extra,
                    proposal=proposal,
                )
            )
        return drafts

    def generate_exceptions(
        self,
        company_id: str,
        matched_refs: MatchedRefs | None = None,
        actor_id: str = SYSTEM_ACTOR_ID,
    ) -> ExceptionSweepResult:
        """Clear and regenerate the company's open system exceptions."""
        result = ExceptionSweepResult(company_id=company_id)

        result.cleared = self._store.clear_open_system(company_id)
        self._auditor.log_event(
            company_id=company_id,
            actor_id=actor_id,
            verb=AuditVerb.EXCEPTIONS_CLEARED,
            entity_type=SWEEP_ENTITY,
            entity_id=company_id,
            payload={"cleared": result.cleared},
        )

        matched = matched_refs if matched_refs is not None else self._selector.matched_refs(company_id)
        payouts = self._load(company_id, SourceType.PAYOUT, result)
        banks = self._load(company_id, SourceType.BANK, result)
        ledgers = self._load(company_id, SourceType.LEDGER, result)

        drafts = (
            self._payout_drafts(payouts, banks, matched)
            + self._unmatched_drafts(banks, matched)
            + self._unmatched_drafts(ledgers, matched)
        )

        suppressed = self._store.terminal_fingerprints(company_id)
        by_type: Counter[str] = Counter()
        by_severity: Counter[str] = Counter()
        for draft in drafts:
            if draft.fingerprint in suppressed:
                result.suppressed += 1
                continue
            record_ref = next(iter(draft.entity_refs.values()), None)
            try:
                with self._session.begin_nested():
                    row, created = self._store.record(company_id, draft, actor_id)
            except (ReconciliationError, SQLAlchemyError) as exc:
                code = exc.code if isinstance(exc, ReconciliationError) else "PERSISTENCE_ERROR"
                logger.error(
                    "sweep_record_failed",
                    extra={"company_id": company_id, "record_ref": record_ref, "error": str(exc)},
                )
                result.errors.append(RunError(STAGE, record_ref, code, str(exc)))
                continue
            if row is None:
                result.suppressed += 1
                continue
            (result.created if created else result.reused).append(str(row.id))
            by_type[draft.type.value] += 1
            by_severity[draft.severity.value] += 1

        result.by_type = dict(sorted(by_type.items()))
        result.by_severity = dict(sorted(by_severity.items()))

        self._auditor.log_event(
            company_id=company_id,
            actor_id=actor_id,
            verb=AuditVerb.EXCEPTIONS_GENERATED,
            entity_type=SWEEP_ENTITY,
            entity_id=company_id,
            payload={
                "total": result.total,
                "by_type": result.by_type,
                "by_severity": result.by_severity,
                "suppressed": result.suppressed,
                "errors": len(result.errors),
            },
        )
        logger.info(
            "exceptions_generated",
            extra={
                "company_id": company_id,
                "cleared": result.cleared,
                "total": result.total,
                "suppressed": result.suppressed,
                "errors": len(result.errors),
            },
        )
        return result

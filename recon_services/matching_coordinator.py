"""
recon_services.matching_coordinator -- One reconciliation run per company.

Responsibility:
    Drive the whole pipeline for a company: load and normalize the source
    pools, match payouts to bank transactions, link bank-matched payouts to
    ledger objects, then sweep exceptions.  Produces the operator-facing
    ``MatchingReport``.

Architecture position:
    Services -- orchestration.  Calls the PayoutBankMatcher, LedgerLinker and
    ExceptionsEngine; never touches ORM rows directly except through kernel
    services.

Invariants enforced:
    - Stage order is fixed: payout -> bank, payout -> ledger, sweep.
    - Candidate scoring may run on a thread pool; decisions are applied
      sequentially in (date, source_ref) order so that results do not
      depend on scheduling.
    - Stage 2 only considers payouts that have a bank match.
    - Records already matched by a previous run are skipped, so re-running
      on unchanged input creates no new matches.

Failure modes:
    - Per-record ReconciliationErrors are collected as RunErrors; the run
      continues and ends ``partial``.
    - Anything raised outside a per-record scope ends the run ``failed``;
      the partial report is still returned.

Audit relevance:
    ``matching_run_started`` / ``matching_run_completed`` bracket every run
    and carry the settings checksum and the final results.
"""

from __future__ import annotations

import contextvars
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from recon_config import CompanySettings, get_company_settings
from recon_engines.candidate_matcher import CandidatePool, CandidateSearch, search_candidates
from recon_engines.exception_rules import FxRateLookup, payout_missing_in_ledger_draft
from recon_engines.normalization import normalize_pool
from recon_kernel.domain.clock import Clock, SystemClock
from recon_kernel.domain.records import NormalizedRecord, SourceType
from recon_kernel.exceptions import ReconciliationError
from recon_kernel.logging_config import LogContext, get_logger
from recon_kernel.models.audit_event import AuditVerb
from recon_kernel.models.match import MatchStrategy
from recon_kernel.selectors.source_selector import MatchedRefs, SourceSelector
from recon_kernel.services.auditor_service import SYSTEM_ACTOR_ID, AuditorService
from recon_kernel.services.exception_store import ExceptionStore
from recon_kernel.services.match_service import MatchService
from recon_services._run_types import MatchingReport, RunError, RunStatus
from recon_services.exceptions_engine import ExceptionsEngine
from recon_services.ledger_linker import LedgerDirectory, LedgerLinker
from recon_services.payout_bank_matcher import PayoutBankMatcher

logger = get_logger("services.matching_coordinator")

RUN_ENTITY = "matching_run"

EXTERNAL_REF_LINK_CONFIDENCE = 1.0
FUZZY_LINK_CONFIDENCE = 0.95


@dataclass
class MatchingStats:
    company_id: str
    matches_by_strategy: dict[str, int] = field(default_factory=dict)
    open_exceptions_by_type: dict[str, int] = field(default_factory=dict)
    open_exceptions_by_severity: dict[str, int] = field(default_factory=dict)
    unmatched: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "company_id": self.company_id,
            "matches_by_strategy": self.matches_by_strategy,
            "open_exceptions_by_type": self.open_exceptions_by_type,
            "open_exceptions_by_severity": self.open_exceptions_by_severity,
            "unmatched": self.unmatched,
        }


def _error(stage: str, record_ref: str | None, exc: Exception) -> RunError:
    code = exc.code if isinstance(exc, ReconciliationError) else type(exc).__name__
    return RunError(stage=stage, record_ref=record_ref, code=code, message=str(exc))


class MatchingCoordinator:
    """
    Runs the reconciliation pipeline for one company at a time.

    Contract:
        ``run_matching`` flushes only; the caller commits (typically through
        ``session_scope()``).  Settings are resolved per company unless
        injected.

    Non-goals:
        Scheduling runs, or running several companies concurrently on one
        session.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        settings: CompanySettings | None = None,
        config_dir: Path | None = None,
        fx_lookup: FxRateLookup | None = None,
        ledger_directory: LedgerDirectory | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._session = session
        self._clock = clock or SystemClock()
        self._settings = settings
        self._config_dir = config_dir
        self._fx_lookup = fx_lookup
        self._ledger_directory = ledger_directory
        self._sleep = sleep
        self._auditor = AuditorService(session, self._clock)
        self._selector = SourceSelector(session)

    def _settings_for(self, company_id: str) -> CompanySettings:
        if self._settings is not None:
            return self._settings
        return get_company_settings(company_id, self._config_dir)

    def _load(
        self,
        company_id: str,
        source_type: SourceType,
        settings: CompanySettings,
        report: MatchingReport,
    ) -> list[NormalizedRecord]:
        pool = self._selector.load_pool(company_id, source_type)
        result = normalize_pool(
            ((r.source_ref, r.raw) for r in pool),
            source_type,
            home_currency=settings.home_currency,
        )
        for source_ref, exc in result.errors:
            report.errors.append(_error("normalize", source_ref, exc))
        return result.records

    # ------------------------------------------------------------------
    # Stage 1: payout -> bank
    # ------------------------------------------------------------------

    def _score_in_parallel(
        self,
        pending: list[NormalizedRecord],
        pool: CandidatePool,
        settings: CompanySettings,
    ) -> list[CandidateSearch]:
        tolerance = settings.tolerance()
        thresholds = settings.thresholds()
        context = contextvars.copy_context()

        def score_one(payout: NormalizedRecord) -> CandidateSearch:
            return context.copy().run(search_candidates, payout, pool, tolerance, thresholds)

        with ThreadPoolExecutor(max_workers=settings.max_workers) as executor:
            return list(executor.map(score_one, pending))

    def _stage_payout_bank(
        self,
        company_id: str,
        payouts: list[NormalizedRecord],
        banks: list[NormalizedRecord],
        matched: MatchedRefs,
        settings: CompanySettings,
        actor_id: str,
        report: MatchingReport,
    ) -> None:
        pending = [
            p for p in payouts
            if not matched.is_matched(SourceType.PAYOUT, p.source_ref, SourceType.BANK)
        ]
        pool = CandidatePool(
            b for b in banks
            if not matched.is_matched(SourceType.BANK, b.source_ref, SourceType.PAYOUT)
        )
        searches = self._score_in_parallel(pending, pool, settings)

        matcher = PayoutBankMatcher(self._session, self._clock, self._auditor)
        consumed: set[str] = set()
        for payout, search in zip(pending, searches):
            with LogContext.bind(record_ref=payout.ref_key):
                try:
                    outcome = matcher.match(
                        company_id, payout, pool, settings, consumed,
                        actor_id=actor_id, search=search,
                    )
                except ReconciliationError as exc:
                    report.errors.append(_error("payout_bank", payout.source_ref, exc))
                    continue
            if outcome.matched:
                report.results.payout_bank_matches += 1
            elif outcome.suppressed:
                report.results.suppressed += 1
            else:
                report.results.payout_bank_exceptions += 1

    # ------------------------------------------------------------------
    # Stage 2: payout -> ledger
    # ------------------------------------------------------------------

    def _stage_payout_ledger(
        self,
        company_id: str,
        payouts: list[NormalizedRecord],
        banks: list[NormalizedRecord],
        settings: CompanySettings,
        actor_id: str,
        report: MatchingReport,
    ) -> None:
        matched = self._selector.matched_refs(company_id)
        bank_by_ref = {b.source_ref: b for b in banks}
        linker = LedgerLinker(
            self._session, settings, self._clock,
            directory=self._ledger_directory, sleep=self._sleep,
        )
        matches = MatchService(self._session, self._clock, self._auditor)
        exceptions = ExceptionStore(self._session, self._clock, self._auditor)

        for payout in payouts:
            bank_ref = matched.counterpart(SourceType.PAYOUT, payout.source_ref, SourceType.BANK)
            if bank_ref is None:
                continue
            if matched.is_matched(SourceType.PAYOUT, payout.source_ref, SourceType.LEDGER):
                continue
            bank = bank_by_ref.get(bank_ref)

            with LogContext.bind(record_ref=payout.ref_key):
                try:
                    with self._session.begin_nested():
                        link = linker.find_existing_link(company_id, payout, counterpart=bank)
                        if link is not None:
                            confidence = (
                                EXTERNAL_REF_LINK_CONFIDENCE
                                if link.method == "external_ref"
                                else FUZZY_LINK_CONFIDENCE
                            )
                            matches.create_match(
                                company_id=company_id,
                                left_type=SourceType.PAYOUT.value,
                                left_ref=payout.source_ref,
                                right_type=SourceType.LEDGER.value,
                                right_ref=link.record.source_ref,
                                strategy=MatchStrategy.PAYOUT_LEDGER_AUTO,
                                confidence=confidence,
                                actor_id=actor_id,
                                evidence={"method": link.method, **link.details},
                            )
                            report.results.ledger_matches += 1
                        else:
                            proposal = linker.propose_creation(payout, counterpart=bank)
                            row, _ = exceptions.record(
                                company_id,
                                payout_missing_in_ledger_draft(payout, bank, proposal),
                                actor_id,
                            )
                            if row is None:
                                report.results.suppressed += 1
                            else:
                                report.results.ledger_exceptions += 1
                except (ReconciliationError, SQLAlchemyError) as exc:
                    logger.error(
                        "payout_ledger_failed",
                        extra={"company_id": company_id, "record_ref": payout.source_ref, "error": str(exc)},
                    )
                    report.errors.append(_error("payout_ledger", payout.source_ref, exc))

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    def run_matching(self, company_id: str, actor_id: str = SYSTEM_ACTOR_ID) -> MatchingReport:
        """
        Run all three stages for ``company_id``.

        Never raises for per-record problems; see the report's ``errors``
        and ``status``.
        """
        run_id = str(uuid4())
        started = time.monotonic()
        report = MatchingReport(company_id=company_id, run_id=run_id, started_at=self._clock.now())

        with LogContext.bind(company_id=company_id, run_id=run_id, actor_id=actor_id):
            logger.info("matching_run_started", extra={"company_id": company_id, "run_id": run_id})
            try:
                settings = self._settings_for(company_id)
                self._auditor.log_event(
                    company_id=company_id,
                    actor_id=actor_id,
                    verb=AuditVerb.MATCHING_RUN_STARTED,
                    entity_type=RUN_ENTITY,
                    entity_id=run_id,
                    payload={"run_id": run_id, "settings_checksum": settings.checksum},
                )

                payouts = self._load(company_id, SourceType.PAYOUT, settings, report)
                banks = self._load(company_id, SourceType.BANK, settings, report)
                matched = self._selector.matched_refs(company_id)

                self._stage_payout_bank(company_id, payouts, banks, matched, settings, actor_id, report)
                self._stage_payout_ledger(company_id, payouts, banks, settings, actor_id, report)

                sweep = ExceptionsEngine(
                    self._session,
                    settings,
                    self._clock,
                    fx_lookup=self._fx_lookup,
                    ledger_linker=LedgerLinker(
                        self._session, settings, self._clock,
                        directory=self._ledger_directory, sleep=self._sleep,
                    ),
                    auditor=self._auditor,
                ).generate_exceptions(company_id, actor_id=actor_id)
                report.results.sweep_exceptions = sweep.total
                # the sweep re-normalizes the same pools
                seen = {(e.record_ref, e.code) for e in report.errors}
                report.errors.extend(e for e in sweep.errors if (e.record_ref, e.code) not in seen)

                report.status = RunStatus.PARTIAL if report.errors else RunStatus.COMPLETED
            except Exception as exc:
                logger.exception(
                    "matching_run_failed",
                    extra={"company_id": company_id, "run_id": run_id},
                )
                report.status = RunStatus.FAILED
                report.errors.append(_error("run", None, exc))

            report.completed_at = self._clock.now()
            report.duration_ms = round((time.monotonic() - started) * 1000, 3)
            self._audit_completion(company_id, actor_id, report)

            logger.info(
                "matching_run_completed",
                extra={
                    "company_id": company_id,
                    "run_id": run_id,
                    "status": report.status.value,
                    "total_matches": report.results.total_matches,
                    "total_exceptions": report.results.total_exceptions,
                    "errors": len(report.errors),
                    "duration_ms": report.duration_ms,
                },
            )
        return report

    def _audit_completion(self, company_id: str, actor_id: str, report: MatchingReport) -> None:
        try:
            with self._session.begin_nested():
                self._auditor.log_event(
                    company_id=company_id,
                    actor_id=actor_id,
                    verb=AuditVerb.MATCHING_RUN_COMPLETED,
                    entity_type=RUN_ENTITY,
                    entity_id=report.run_id,
                    payload={
                        "run_id": report.run_id,
                        "status": report.status.value,
                        "results": report.results.to_dict(),
                        "errors": len(report.errors),
                    },
                )
        except SQLAlchemyError as exc:
            logger.error(
                "matching_run_completion_unaudited",
                extra={"company_id": company_id, "run_id": report.run_id, "error": str(exc)},
            )
            report.status = RunStatus.FAILED
            report.errors.append(_error("run", None, exc))

    def matching_stats(self, company_id: str) -> MatchingStats:
        """Matches by strategy, open exceptions, and unmatched records per pool."""
        matched = self._selector.matched_refs(company_id)
        by_type, by_severity = self._selector.open_exception_counts(company_id)

        payouts = self._selector.load_pool(company_id, SourceType.PAYOUT)
        banks = self._selector.load_pool(company_id, SourceType.BANK)
        ledgers = self._selector.load_pool(company_id, SourceType.LEDGER)
        unmatched = {
            SourceType.PAYOUT.value: sum(
                1 for r in payouts
                if not matched.is_matched(SourceType.PAYOUT, r.source_ref, SourceType.BANK)
            ),
            SourceType.BANK.value: sum(
                1 for r in banks if not matched.is_matched(SourceType.BANK, r.source_ref)
            ),
            SourceType.LEDGER.value: sum(
                1 for r in ledgers if not matched.is_matched(SourceType.LEDGER, r.source_ref)
            ),
        }
        return MatchingStats(
            company_id=company_id,
            matches_by_strategy=self._selector.match_counts_by_strategy(company_id),
            open_exceptions_by_type=by_type,
            open_exceptions_by_severity=by_severity,
            unmatched=unmatched,
        )

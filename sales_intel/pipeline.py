"""
Incremental analysis pipeline.

Composes SourceReader, TranscriptCache, BatchScheduler, AnalysisClient and
ResultStore into one run:

    Idle -> Loading -> ContentAssembly -> Analyzing -> Persisting -> Reporting -> Done

with Aborted reachable on a setup failure. Successful results are flushed to
the result store every `checkpoint_interval` analysis chunks and once more at
the end, so an interrupted run keeps everything flushed before the
interruption.

Usage:
    orchestrator = PipelineOrchestrator(reader, cache, analyzer, store, config)
    report = await orchestrator.run()
    sys.exit(report.exit_code)
"""

import asyncio
import logging
import threading
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from .analysis_client import AnalysisClient, classify_error, failure_result
from .batch_scheduler import BatchScheduler
from .config import PipelineConfig
from .db.models import AnalysisResult, BulkUpsertResult, ChatSummary, Transcript
from .db.result_store import ResultStore
from .db.source_reader import SourceReader
from .db.transcript_cache import TranscriptCache, is_fresh
from .errors import ConfigurationError, FailureKind
from .logging_utils import log_run_metrics
from .transcript import build_transcript

logger = logging.getLogger(__name__)


class PipelineState(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    CONTENT_ASSEMBLY = "content_assembly"
    ANALYZING = "analyzing"
    PERSISTING = "persisting"
    REPORTING = "reporting"
    DONE = "done"
    ABORTED = "aborted"


class RunOutcome(str, Enum):
    """How the run ended, as the caller (cron, CLI) needs to see it."""

    SUCCESS = "success"
    PARTIAL = "partial"                       # some failures, some data persisted
    NO_DATA_PERSISTED = "no_data_persisted"   # work existed, nothing was persisted
    ABORTED = "aborted"                       # setup/configuration error


EXIT_CODES = {
    RunOutcome.SUCCESS: 0,
    RunOutcome.PARTIAL: 1,
    RunOutcome.NO_DATA_PERSISTED: 2,
    RunOutcome.ABORTED: 3,
}


@dataclass
class RunStats:
    """Counters for one run."""

    listed: int = 0
    cache_hits: int = 0
    cache_stale: int = 0
    cache_misses: int = 0
    cache_writes: int = 0
    source_errors: int = 0
    analyzed: int = 0
    empty: int = 0
    quota_failures: int = 0
    transient_failures: int = 0
    malformed_failures: int = 0
    persisted: int = 0
    persist_failed: int = 0
    flushes: int = 0
    analysis_chunks: int = 0
    avg_processing_time_ms: float = 0.0
    duration_seconds: float = 0.0
    stopped: bool = False

    @property
    def analysis_failures(self) -> int:
        return self.quota_failures + self.transient_failures + self.malformed_failures

    @property
    def total_failures(self) -> int:
        return self.analysis_failures + self.source_errors + self.persist_failed


@dataclass
class RunReport:
    """Everything a run produced: final state, outcome, counters and results."""

    state: PipelineState = PipelineState.IDLE
    outcome: RunOutcome = RunOutcome.SUCCESS
    stats: RunStats = field(default_factory=RunStats)
    results: List[AnalysisResult] = field(default_factory=list)
    source_errors: List[Tuple[str, str]] = field(default_factory=list)
    persist_errors: List[Tuple[Optional[str], str]] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def exit_code(self) -> int:
        return EXIT_CODES[self.outcome]

    def to_metrics(self) -> Dict:
        metrics = asdict(self.stats)
        metrics["state"] = self.state.value
        metrics["outcome"] = self.outcome.value
        return metrics


class CheckpointBuffer:
    """Successful results waiting to be persisted.

    Only the orchestrating control flow touches this; workers return values.
    A result leaves the buffer when the store confirms it, or when the store
    rejects that specific row. Anything else stays for the next flush.
    """

    def __init__(self):
        self._pending: Dict[str, AnalysisResult] = {}

    def add(self, result: AnalysisResult) -> None:
        self._pending[result.conversation_id] = result

    @property
    def pending(self) -> List[AnalysisResult]:
        return list(self._pending.values())

    def __len__(self) -> int:
        return len(self._pending)

    def settle(self, outcome: BulkUpsertResult) -> List[Tuple[Optional[str], str]]:
        """Drop confirmed and row-rejected results; return the rejections."""
        for conversation_id in outcome.succeeded_ids:
            self._pending.pop(conversation_id, None)

        # Errors naming a row are data rejections; retrying the same data fails again.
        # Errors without one are systemic, so those rows stay for the next flush.
        rejected = []
        for row_error in outcome.errors:
            if row_error.conversation_id and row_error.conversation_id in self._pending:
                self._pending.pop(row_error.conversation_id)
                rejected.append((row_error.conversation_id, row_error.error))
        return rejected


class PipelineOrchestrator:
    """Runs the end-to-end incremental analysis over the unanalyzed backlog."""

    def __init__(
        self,
        reader: SourceReader,
        cache: TranscriptCache,
        analyzer: AnalysisClient,
        store: ResultStore,
        config: PipelineConfig,
        stop_checker: Optional[Callable[[], bool]] = None,
    ):
        self.reader = reader
        self.cache = cache
        self.analyzer = analyzer
        self.store = store
        self.config = config
        self._external_stop = stop_checker
        self._stop_event = threading.Event()
        self.state = PipelineState.IDLE
        self.checkpoint = CheckpointBuffer()

    # -------------------------------------------------------------------------
    # Control
    # -------------------------------------------------------------------------

    def request_stop(self) -> None:
        """Finish the current chunk, flush, report, then stop."""
        if not self._stop_event.is_set():
            logger.warning("Stop requested, finishing current chunk before exiting")
        self._stop_event.set()

    def should_stop(self) -> bool:
        if self._stop_event.is_set():
            return True
        return self._external_stop is not None and self._external_stop()

    def _transition(self, state: PipelineState) -> None:
        logger.debug(f"Pipeline state {self.state.value} -> {state.value}")
        self.state = state

    # -------------------------------------------------------------------------
    # Workers (return values only)
    # -------------------------------------------------------------------------

    async def _assemble(self, chat: ChatSummary) -> Transcript:
        record = await asyncio.to_thread(self.reader.load_conversation, chat)
        return build_transcript(
            record.conversation_id,
            record.messages,
            display_name=record.chat_name,
            max_messages=self.config.max_conversation_length,
        )

    async def _analyze(self, transcript: Transcript) -> AnalysisResult:
        return await self.analyzer.analyze(transcript)

    # -------------------------------------------------------------------------
    # Stages
    # -------------------------------------------------------------------------

    async def _load_transcripts(self, chats: List[ChatSummary], report: RunReport) -> List[Transcript]:
        """Cache-aside assembly. Returns transcripts in listing order."""
        stats = report.stats
        cfg = self.config
        ids = [chat.chat_id for chat in chats]

        cached = await asyncio.to_thread(self.cache.get_many, ids)
        now = datetime.now(timezone.utc)

        transcripts: Dict[str, Transcript] = {}
        misses: List[ChatSummary] = []
        for chat in chats:
            entry = cached.get(chat.chat_id)
            if entry is not None and is_fresh(entry, chat, cfg.cache_policy, cfg.cache_max_age_days, now):
                transcripts[chat.chat_id] = entry.transcript
                stats.cache_hits += 1
            else:
                if entry is not None:
                    stats.cache_stale += 1
                misses.append(chat)
        stats.cache_misses = len(misses)

        logger.info(
            f"Cache: {stats.cache_hits} hits, {len(misses)} to assemble"
            + (f" ({stats.cache_stale} stale)" if stats.cache_stale else "")
        )

        scheduler = BatchScheduler(
            cfg.io_concurrency,
            delay=cfg.io_chunk_delay,
            timeout=cfg.request_timeout,
            stop_checker=self.should_stop,
            name="assemble",
        )
        fresh: List[Transcript] = []
        async for chunk in scheduler.iter_chunks(misses, self._assemble):
            for outcome in chunk.outcomes:
                chat_id = outcome.item.chat_id
                if outcome.ok:
                    transcripts[chat_id] = outcome.value
                    fresh.append(outcome.value)
                else:
                    stats.source_errors += 1
                    report.source_errors.append((chat_id, str(outcome.error)))
                    logger.warning(f"Excluding {chat_id} from this run: {outcome.error}")
            logger.info(
                f"Assembly chunk {chunk.index}/{chunk.total}: "
                f"{len(chunk.succeeded)} loaded, {len(chunk.failed)} failed"
            )
        if scheduler.stopped:
            stats.stopped = True

        cacheable = [t for t in fresh if not t.is_empty]
        if cacheable:
            try:
                stats.cache_writes = await asyncio.to_thread(self.cache.put_many, cacheable)
            except Exception as e:
                # Transcripts are still in hand; only the next run loses the shortcut
                logger.warning(f"Cache write failed for {len(cacheable)} transcripts: {e}")

        return [transcripts[chat.chat_id] for chat in chats if chat.chat_id in transcripts]

    async def _flush(self, report: RunReport, final: bool = False) -> None:
        """Persist the checkpoint buffer. The buffer only shrinks on confirmation."""
        if not len(self.checkpoint):
            return

        pending = self.checkpoint.pending
        label = "Final flush" if final else "Checkpoint flush"
        try:
            outcome = await asyncio.wait_for(
                asyncio.to_thread(self.store.bulk_upsert, pending),
                timeout=self.config.request_timeout,
            )
        except asyncio.TimeoutError:
            logger.error(f"{label} of {len(pending)} results timed out; keeping them for retry")
            return
        except Exception as e:
            logger.error(f"{label} of {len(pending)} results failed; keeping them for retry: {e}")
            return

        report.stats.flushes += 1
        report.stats.persisted += outcome.succeeded
        rejected = self.checkpoint.settle(outcome)
        report.stats.persist_failed += len(rejected)
        report.persist_errors.extend(rejected)

        logger.info(
            f"{label}: {outcome.succeeded} persisted, {len(rejected)} rejected, "
            f"{len(self.checkpoint)} still pending"
        )

    async def _analyze_all(self, transcripts: List[Transcript], report: RunReport) -> None:
        stats = report.stats
        cfg = self.config
        scheduler = BatchScheduler(
            cfg.ai_concurrency,
            delay=cfg.ai_chunk_delay,
            stop_checker=self.should_stop,
            name="analyze",
        )

        async for chunk in scheduler.iter_chunks(transcripts, self._analyze):
            chunk_ok = chunk_quota = chunk_other = 0
            for outcome in chunk.outcomes:
                if outcome.ok:
                    result = outcome.value
                else:
                    # Unexpected worker fault; still accounted as a failed analysis
                    error = classify_error(outcome.error)
                    result = failure_result(outcome.item.conversation_id, error, outcome.item.metadata)

                report.results.append(result)
                if result.failure_kind == FailureKind.QUOTA_EXCEEDED:
                    stats.quota_failures += 1
                    chunk_quota += 1
                elif result.failure_kind == FailureKind.MALFORMED_RESPONSE:
                    stats.malformed_failures += 1
                    chunk_other += 1
                elif result.is_failure:
                    stats.transient_failures += 1
                    chunk_other += 1
                elif result.analysis_success:
                    stats.analyzed += 1
                    chunk_ok += 1
                    self.checkpoint.add(result)
                else:
                    stats.empty += 1

            stats.analysis_chunks += 1
            level = logging.ERROR if chunk_quota else logging.WARNING if chunk_other else logging.INFO
            logger.log(
                level,
                f"Analysis chunk {chunk.index}/{chunk.total}: {chunk_ok} analyzed, "
                f"{chunk_quota} quota failures, {chunk_other} other failures",
            )

            if chunk.index % cfg.checkpoint_interval == 0:
                self._transition(PipelineState.PERSISTING)
                await self._flush(report)
                self._transition(PipelineState.ANALYZING)

        if scheduler.stopped:
            stats.stopped = True

    # -------------------------------------------------------------------------
    # Run
    # -------------------------------------------------------------------------

    async def run(self) -> RunReport:
        """Execute one full pipeline run. Never raises for per-item failures."""
        report = RunReport()
        stats = report.stats
        start = time.monotonic()

        try:
            self.config.validate_for_run()
        except ConfigurationError as e:
            return self._abort(report, str(e))

        self._transition(PipelineState.LOADING)
        try:
            chats = await asyncio.to_thread(self.reader.list_unanalyzed, self.config.analysis_window_days)
        except Exception as e:
            return self._abort(report, f"Could not list unanalyzed conversations: {e}")
        stats.listed = len(chats)

        if chats:
            self._transition(PipelineState.CONTENT_ASSEMBLY)
            transcripts = await self._load_transcripts(chats, report)

            self._transition(PipelineState.ANALYZING)
            logger.info(
                f"Analyzing {len(transcripts)} conversations "
                f"({self.config.ai_concurrency} concurrent, flush every "
                f"{self.config.checkpoint_interval} chunks)"
            )
            await self._analyze_all(transcripts, report)

            self._transition(PipelineState.PERSISTING)
            await self._flush(report, final=True)
            if len(self.checkpoint):
                # Still unconfirmed after the final retry: report, don't drop silently
                for result in self.checkpoint.pending:
                    report.persist_errors.append((result.conversation_id, "Not persisted after final flush"))
                stats.persist_failed += len(self.checkpoint)
                logger.error(f"{len(self.checkpoint)} analyzed results could not be persisted")
        else:
            logger.info("No unanalyzed conversations found")

        self._transition(PipelineState.REPORTING)
        latencies = [r.processing_time_ms for r in report.results if r.analysis_success]
        stats.avg_processing_time_ms = round(sum(latencies) / len(latencies), 1) if latencies else 0.0
        stats.duration_seconds = round(time.monotonic() - start, 2)
        report.outcome = self._decide_outcome(stats)
        self._log_summary(report)

        self._transition(PipelineState.DONE)
        report.state = self.state
        log_run_metrics(report.to_metrics())
        return report

    def _abort(self, report: RunReport, message: str) -> RunReport:
        logger.error(f"Pipeline aborted: {message}")
        self._transition(PipelineState.ABORTED)
        report.state = self.state
        report.outcome = RunOutcome.ABORTED
        report.error = message
        return report

    @staticmethod
    def _decide_outcome(stats: RunStats) -> RunOutcome:
        if stats.persisted == 0 and stats.total_failures > 0:
            return RunOutcome.NO_DATA_PERSISTED
        if stats.total_failures > 0:
            return RunOutcome.PARTIAL
        return RunOutcome.SUCCESS

    def _log_summary(self, report: RunReport) -> None:
        stats = report.stats
        logger.info("")
        logger.info("=" * 60)
        logger.info("Sales Analysis Run Complete" + (" (stopped early)" if stats.stopped else ""))
        logger.info("=" * 60)
        logger.info(f"Conversations listed:     {stats.listed}")
        logger.info(f"Cache hits / writes:      {stats.cache_hits} / {stats.cache_writes}")
        logger.info(f"Analyzed successfully:    {stats.analyzed}")
        logger.info(f"Empty conversations:      {stats.empty}")
        logger.info(f"Persisted:                {stats.persisted} ({stats.flushes} flushes)")
        logger.info(f"Avg analysis latency:     {stats.avg_processing_time_ms}ms")
        logger.info(f"Total time:               {stats.duration_seconds}s")
        if stats.quota_failures:
            logger.error(
                f"Quota failures:           {stats.quota_failures} "
                "(AI quota exhausted: wait for the reset and rerun)"
            )
        other = stats.transient_failures + stats.malformed_failures + stats.source_errors + stats.persist_failed
        if other:
            logger.warning(
                f"Other failures:           {other} "
                f"(transient={stats.transient_failures}, malformed={stats.malformed_failures}, "
                f"source={stats.source_errors}, persistence={stats.persist_failed}; investigate)"
            )
        logger.info(f"Outcome:                  {report.outcome.value}")
        logger.info("")

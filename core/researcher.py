"""
Iterative donor researcher.

Runs a bounded search → reflect → (search again | synthesize) loop over a
single subject and returns a completed ``ResearchRun``.

State machine
─────────────
    SEARCHING ──► REFLECTING ──► SEARCHING      (insufficient, budget left)
                             └─► SYNTHESIZING   (sufficient / budget spent /
                                                 no follow-ups / cancelled)
    SYNTHESIZING ──► DONE
    any state ──► FAILED                        (reflection or synthesis error)

``ResearchController.step`` advances exactly one transition, so every
termination path can be exercised with fake collaborators and no network.

Failure policy
──────────────
* A query whose search fails outright contributes an empty ``Summary`` and
  the loop carries on; partial evidence is still useful.
* Reflection or synthesis failures are fatal: the run is marked FAILED and
  the ``ResearchError`` is re-raised with the run attached. Nothing is
  retried here; retries belong to the job scheduler.
* Person identification and structured extraction are enrichments. They
  fall back to low-confidence or default results and never fail a run.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Iterable, Optional, Protocol, Sequence

from core.errors import ResearchError
from core.identity import IDENTITY_SOURCE_COUNT
from core.models import (
    DonorAssessment,
    DonorProfile,
    PersonIdentity,
    ReflectionResult,
    ResearchRun,
    RunState,
    Source,
    Summary,
    SynthesisResult,
    TerminationReason,
    TokenUsage,
)

if TYPE_CHECKING:
    from config.settings import Settings

logger = logging.getLogger(__name__)


# ── Collaborator interfaces ────────────────────────────────────────────────


class QueryRunner(Protocol):
    def summarize_query(
        self, query: str, research_topic: str, identity: Optional[PersonIdentity] = None,
    ) -> Summary: ...


class Reflector(Protocol):
    def analyze(self, research_topic: str, summaries: Sequence[Summary]) -> ReflectionResult: ...


class Synthesizer(Protocol):
    def synthesize(self, research_topic: str, summaries: Sequence[Summary]) -> SynthesisResult: ...


class Identifier(Protocol):
    def identify(
        self, donor: DonorProfile, sources: Sequence[Source] = (),
    ) -> tuple[PersonIdentity, TokenUsage]: ...


class Extractor(Protocol):
    def extract(
        self, research_topic: str, answer: str, summaries: Sequence[Summary],
    ) -> tuple[DonorAssessment, TokenUsage]: ...


# ── Loop bookkeeping ───────────────────────────────────────────────────────


@dataclass
class LoopContext:
    """Controller-side state that is not part of the published run."""

    max_iterations: int
    pending: deque[str] = field(default_factory=deque)
    issued: set[str] = field(default_factory=set)
    cancel_event: Optional[threading.Event] = None
    donor: Optional[DonorProfile] = None
    identity: Optional[PersonIdentity] = None

    @property
    def cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    def enqueue(self, queries: Iterable[str], limit: Optional[int] = None) -> int:
        """Queue queries not issued or queued before; return how many were added."""
        added = 0
        for query in queries:
            key = query.strip().lower()
            if not key or key in self.issued:
                continue
            if limit is not None and added >= limit:
                break
            self.issued.add(key)
            self.pending.append(query.strip())
            added += 1
        return added


def _finish(run: ResearchRun, reason: TerminationReason) -> RunState:
    run.termination_reason = reason
    run.state = RunState.SYNTHESIZING
    return run.state


# ── Controller ─────────────────────────────────────────────────────────────


class ResearchController:
    """Drives one research run at a time through the state machine."""

    def __init__(
        self,
        summarizer: QueryRunner,
        reflection: Reflector,
        synthesizer: Synthesizer,
        max_queries_per_iteration: int = 3,
        max_concurrency: int = 4,
        identifier: Optional[Identifier] = None,
        extractor: Optional[Extractor] = None,
    ) -> None:
        if max_queries_per_iteration < 1:
            raise ValueError("max_queries_per_iteration must be at least 1.")
        self.summarizer = summarizer
        self.reflection = reflection
        self.synthesizer = synthesizer
        self.max_queries_per_iteration = max_queries_per_iteration
        self.max_concurrency = max(1, max_concurrency)
        self.identifier = identifier
        self.extractor = extractor

    # ── Lifecycle ──────────────────────────────────────────────────────────

    def start(
        self,
        subject: str,
        initial_query: str,
        max_iterations: int,
        research_topic: Optional[str] = None,
        seed_queries: Iterable[str] = (),
        cancel_event: Optional[threading.Event] = None,
        donor: Optional[DonorProfile] = None,
    ) -> tuple[ResearchRun, LoopContext]:
        """Create a fresh run in the SEARCHING state plus its loop context.

        Raises:
            ValueError: If the subject or initial query is blank, or the
                iteration budget is below one.
        """
        subject = subject.strip()
        initial_query = initial_query.strip()
        if not subject:
            raise ValueError("Research subject must not be empty.")
        if not initial_query:
            raise ValueError("Initial query must not be empty.")
        if max_iterations < 1:
            raise ValueError("max_iterations must be at least 1.")

        run = ResearchRun(subject=subject, research_topic=(research_topic or initial_query).strip())
        ctx = LoopContext(max_iterations=max_iterations, cancel_event=cancel_event, donor=donor)
        ctx.enqueue([initial_query, *seed_queries])
        return run, ctx

    def step(self, run: ResearchRun, ctx: LoopContext) -> RunState:
        """Advance *run* by one state transition and return the new state."""
        handlers = {
            RunState.SEARCHING: self._search,
            RunState.REFLECTING: self._reflect,
            RunState.SYNTHESIZING: self._synthesize,
        }
        handler = handlers.get(run.state)
        if handler is None:
            return run.state

        try:
            run.state = handler(run, ctx)
        except ResearchError as exc:
            run.state = RunState.FAILED
            run.termination_reason = TerminationReason.FAILED
            run.error = str(exc)
            run.completed_at = datetime.now(timezone.utc)
            exc.run = run
            logger.error(
                "Research failed for subject=%r after %d iterations: %s",
                run.subject, run.iterations, exc,
            )
            raise
        return run.state

    def run_research(
        self,
        subject: str,
        initial_query: str,
        max_iterations: int,
        research_topic: Optional[str] = None,
        seed_queries: Iterable[str] = (),
        cancel_event: Optional[threading.Event] = None,
        donor: Optional[DonorProfile] = None,
    ) -> ResearchRun:
        """Run the full loop for *subject* and return the completed run.

        Args:
            subject: Person or organisation being researched.
            initial_query: First search-engine query.
            max_iterations: Hard cap on search + reflect cycles.
            research_topic: The question to answer; defaults to the query.
            seed_queries: Extra first-iteration queries (deduplicated, capped).
            cancel_event: When set, no new iteration starts; the run goes
                straight to synthesis with what it has.
            donor: Donor record used to identify the person after the
                first iteration so later sources about namesakes are dropped.

        Raises:
            ReflectionError: If a sufficiency judgment fails.
            SynthesisError: If the final answer cannot be generated.
        """
        run, ctx = self.start(
            subject, initial_query, max_iterations,
            research_topic=research_topic, seed_queries=seed_queries, cancel_event=cancel_event,
            donor=donor,
        )
        logger.info(
            "Starting research for subject=%r topic=%r (max %d iterations)",
            run.subject, run.research_topic, max_iterations,
        )

        while run.state not in (RunState.DONE, RunState.FAILED):
            self.step(run, ctx)

        usage = run.token_usage
        logger.info(
            "Research completed for subject=%r: %s after %d iterations, %d summaries, "
            "%d sources, %d citations, %d tokens (%d input, %d output)",
            run.subject, run.termination_reason.value, run.iterations, len(run.summaries),
            run.total_sources, len(run.citations),
            usage.total_tokens, usage.prompt_tokens, usage.completion_tokens,
        )
        return run

    # ── Transitions ────────────────────────────────────────────────────────

    def _run_query(
        self, query: str, research_topic: str, identity: Optional[PersonIdentity] = None,
    ) -> Summary:
        try:
            return self.summarizer.summarize_query(query, research_topic, identity=identity)
        except Exception as exc:
            logger.error("Search failed for query=%r: %s", query, exc)
            return Summary(query=query, summary=f"Search failed: {exc}")

    def _search(self, run: ResearchRun, ctx: LoopContext) -> RunState:
        if ctx.cancelled:
            return _finish(run, TerminationReason.CANCELLED)
        if run.iterations >= ctx.max_iterations:
            return _finish(run, TerminationReason.ITERATION_BUDGET_EXHAUSTED)
        if not ctx.pending:
            return _finish(run, TerminationReason.NO_FOLLOW_UP_QUERIES)

        batch = [ctx.pending.popleft() for _ in range(min(self.max_queries_per_iteration, len(ctx.pending)))]
        logger.info(
            "[Iteration %d] Searching %d queries for subject=%r: %s",
            run.iterations + 1, len(batch), run.subject, batch,
        )

        # Results are collected by submission index, so summaries land in
        # query-issue order whatever order the searches finish in.
        workers = min(self.max_concurrency, len(batch))
        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = [pool.submit(self._run_query, q, run.research_topic, ctx.identity) for q in batch]
            summaries = [f.result() for f in futures]

        for summary in summaries:
            run.summaries.append(summary)
            run.stage_usage.search_summaries = run.stage_usage.search_summaries + summary.token_usage
            run.stage_usage.relevance_filtering = (
                run.stage_usage.relevance_filtering + summary.filtering_usage
            )

        if run.iterations == 0:
            self._identify(run, ctx, summaries)

        logger.info(
            "[Iteration %d] Collected %d summaries (%d total, %d sources)",
            run.iterations + 1, len(summaries), len(run.summaries), run.total_sources,
        )
        return RunState.REFLECTING

    def _identify(self, run: ResearchRun, ctx: LoopContext, summaries: Sequence[Summary]) -> None:
        if self.identifier is None or ctx.donor is None or ctx.identity is not None:
            return
        top = [s for summary in summaries for s in summary.sources][:IDENTITY_SOURCE_COUNT]
        identity, usage = self.identifier.identify(ctx.donor, top)
        run.stage_usage.person_identification = run.stage_usage.person_identification + usage
        run.person_identity = identity
        ctx.identity = identity
        logger.info(
            "[Iteration 1] Identified %r with confidence %.2f from %d sources",
            identity.full_name, identity.confidence, len(top),
        )

    def _reflect(self, run: ResearchRun, ctx: LoopContext) -> RunState:
        try:
            reflection = self.reflection.analyze(run.research_topic, list(run.summaries))
        except ResearchError as exc:
            if exc.token_usage is not None:
                run.stage_usage.reflection = run.stage_usage.reflection + exc.token_usage
            raise

        run.stage_usage.reflection = run.stage_usage.reflection + reflection.token_usage
        run.iterations += 1

        if reflection.is_sufficient:
            logger.info("[Iteration %d] Evidence sufficient, ending research", run.iterations)
            return _finish(run, TerminationReason.SUFFICIENT_EVIDENCE)

        added = ctx.enqueue(reflection.follow_up_queries, limit=self.max_queries_per_iteration)
        logger.info(
            "[Iteration %d] Knowledge gap: %r; queued %d follow-up queries",
            run.iterations, reflection.knowledge_gap, added,
        )

        if run.iterations >= ctx.max_iterations:
            logger.info("[Iteration %d] Iteration budget exhausted", run.iterations)
            return _finish(run, TerminationReason.ITERATION_BUDGET_EXHAUSTED)
        if not ctx.pending:
            return _finish(run, TerminationReason.NO_FOLLOW_UP_QUERIES)
        if ctx.cancelled:
            logger.info("[Iteration %d] Cancelled, synthesizing collected evidence", run.iterations)
            return _finish(run, TerminationReason.CANCELLED)
        return RunState.SEARCHING

    def _synthesize(self, run: ResearchRun, ctx: LoopContext) -> RunState:
        try:
            result = self.synthesizer.synthesize(run.research_topic, list(run.summaries))
        except ResearchError as exc:
            if exc.token_usage is not None:
                run.stage_usage.synthesis = run.stage_usage.synthesis + exc.token_usage
            raise

        run.stage_usage.synthesis = run.stage_usage.synthesis + result.token_usage
        run.answer = result.answer
        run.citations = result.citations

        if self.extractor is not None:
            assessment, usage = self.extractor.extract(
                run.research_topic, result.answer, list(run.summaries),
            )
            run.stage_usage.structured_extraction = run.stage_usage.structured_extraction + usage
            run.structured_data = assessment

        run.completed_at = datetime.now(timezone.utc)
        return RunState.DONE


# ── Factory + convenience wrapper ──────────────────────────────────────────


def build_controller(settings: Settings) -> ResearchController:
    """Wire a controller from *settings* with live search, crawl and Claude clients."""
    from core.crawler import WebCrawler
    from core.extraction import DonorDataExtractor
    from core.identity import PersonIdentifier
    from core.llm import LLMClient
    from core.reflection import ReflectionAnalyzer
    from core.search import GoogleSearchClient
    from core.summarizer import QuerySummarizer
    from core.synthesis import AnswerSynthesizer

    research_llm = LLMClient(settings, model=settings.research_model)
    synthesis_llm = LLMClient(settings, model=settings.synthesis_model, max_tokens=4000)
    identifier = PersonIdentifier(research_llm, max_workers=settings.max_concurrency)
    summarizer = QuerySummarizer(
        settings,
        search=GoogleSearchClient(settings),
        crawler=WebCrawler(settings),
        llm=research_llm,
        identifier=identifier,
    )
    return ResearchController(
        summarizer=summarizer,
        reflection=ReflectionAnalyzer(research_llm),
        synthesizer=AnswerSynthesizer(synthesis_llm),
        max_queries_per_iteration=settings.max_queries_per_iteration,
        max_concurrency=settings.max_concurrency,
        identifier=identifier,
        extractor=DonorDataExtractor(research_llm),
    )


def run_research(
    subject: str,
    initial_query: str,
    max_iterations: Optional[int] = None,
    settings: Optional[Settings] = None,
    **kwargs,
) -> ResearchRun:
    """Blocking research call with collaborators built from *settings*.

    Useful for CLI usage; services should hold a ``ResearchController``.
    """
    if settings is None:
        from config.settings import Settings
        settings = Settings()
    controller = build_controller(settings)
    budget = max_iterations if max_iterations is not None else settings.max_iterations
    return controller.run_research(subject, initial_query, budget, **kwargs)

"""
Pydantic models shared across the donor research core.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Token accounting ───────────────────────────────────────────────────────


class TokenUsage(BaseModel):
    """Token counts reported by one or more model calls."""

    model_config = ConfigDict(frozen=True)

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def __add__(self, other: TokenUsage) -> TokenUsage:
        return TokenUsage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
        )


class StageUsage(BaseModel):
    """Token usage broken down by pipeline stage."""

    search_summaries: TokenUsage = Field(default_factory=TokenUsage)
    person_identification: TokenUsage = Field(default_factory=TokenUsage)
    relevance_filtering: TokenUsage = Field(default_factory=TokenUsage)
    reflection: TokenUsage = Field(default_factory=TokenUsage)
    synthesis: TokenUsage = Field(default_factory=TokenUsage)
    structured_extraction: TokenUsage = Field(default_factory=TokenUsage)

    @property
    def total(self) -> TokenUsage:
        return (
            self.search_summaries
            + self.person_identification
            + self.relevance_filtering
            + self.reflection
            + self.synthesis
            + self.structured_extraction
        )


# ── Evidence ───────────────────────────────────────────────────────────────


class CrawledContent(BaseModel):
    """Outcome of fetching and extracting the full text behind a source link."""

    model_config = ConfigDict(frozen=True)

    url: str
    title: str = ""
    text: str = ""
    word_count: int = 0
    success: bool = False
    error_message: Optional[str] = None


class Source(BaseModel):
    """A single search result consumed by a summary. Identity is ``link``."""

    model_config = ConfigDict(frozen=True)

    title: str
    link: str
    snippet: str = ""
    crawled_content: Optional[CrawledContent] = None

    @property
    def crawled(self) -> bool:
        return self.crawled_content is not None and self.crawled_content.success

    @property
    def crawled_words(self) -> int:
        return self.crawled_content.word_count if self.crawled else 0


class Summary(BaseModel):
    """Distilled result of one search query plus the sources behind it."""

    model_config = ConfigDict(frozen=True)

    query: str
    summary: str
    sources: tuple[Source, ...] = ()
    token_usage: TokenUsage = Field(default_factory=TokenUsage)
    #: Sources dropped as being about a different person.
    filtered_sources: int = 0
    filtering_usage: TokenUsage = Field(default_factory=TokenUsage)
    created_at: datetime = Field(default_factory=_utcnow)

    @property
    def crawled_sources(self) -> list[Source]:
        return [s for s in self.sources if s.crawled]

    @property
    def crawled_words(self) -> int:
        return sum(s.crawled_words for s in self.sources)


# ── Judgments and answers ──────────────────────────────────────────────────


class ReflectionVerdict(BaseModel):
    """Schema the reflection model must fill in."""

    is_sufficient: bool = Field(
        description="Whether the information is sufficient to answer the question"
    )
    knowledge_gap: str = Field(
        description="What information is missing (empty string if sufficient)"
    )
    follow_up_queries: list[str] = Field(
        description="Short 2-5 word web search terms addressing the gap"
    )


class ReflectionResult(BaseModel):
    """Per-iteration sufficiency judgment."""

    is_sufficient: bool
    knowledge_gap: str = ""
    follow_up_queries: list[str] = Field(default_factory=list)
    token_usage: TokenUsage = Field(default_factory=TokenUsage)


class Citation(BaseModel):
    """A deduplicated, display-ready reference derived from sources."""

    url: str
    title: str
    snippet: str
    relevance: str
    word_count: Optional[int] = None


class SynthesisResult(BaseModel):
    """Final cited narrative for a research run."""

    answer: str
    citations: list[Citation] = Field(default_factory=list)
    token_usage: TokenUsage = Field(default_factory=TokenUsage)


# ── Person identity ────────────────────────────────────────────────────────


class PersonIdentity(BaseModel):
    """Identity profile used to tell the subject apart from namesakes."""

    full_name: str = Field(description="The person's full name")
    probable_age: Optional[str] = Field(
        default=None, description="Estimated age range or exact age if known"
    )
    location: Optional[str] = Field(
        default=None, description="Current location, city, state, or country if known"
    )
    profession: Optional[str] = Field(
        default=None, description="Current or primary profession or industry"
    )
    education: Optional[str] = Field(default=None, description="Educational background if known")
    organizations: Optional[str] = Field(
        default=None,
        description="Organizations, companies, or institutions they're affiliated with",
    )
    key_identifiers: list[str] = Field(
        default_factory=list,
        description="Unique identifying information that can distinguish this person",
    )
    confidence: float = Field(
        description="Confidence score from 0-1 on the extracted identity information"
    )
    reasoning: str = Field(
        default="", description="Reasoning behind the identity extraction and confidence score"
    )


class RelevanceVerdict(BaseModel):
    """Schema for judging whether a page is about the researched person."""

    is_relevant: bool = Field(
        description="Whether this content is about the same person we're researching"
    )
    confidence: float = Field(description="Confidence score from 0-1")
    matching_identifiers: list[str] = Field(
        default_factory=list,
        description="Identifiers that match between the person and content",
    )
    contradictions: list[str] = Field(
        default_factory=list,
        description="Any contradicting information that suggests this is a different person",
    )
    reasoning: str = Field(
        default="",
        description="Reasoning explaining why this content is or isn't about the same person",
    )


# ── Donor assessment ───────────────────────────────────────────────────────


class DonorAssessment(BaseModel):
    """Structured facts pulled from a finished research run."""

    inferred_age: Optional[int] = Field(
        default=None, description="Age or estimate from career timeline; null if unknown"
    )
    employer: Optional[str] = Field(
        default=None, description="Current or most recent employer; null if not found"
    )
    estimated_income: Optional[str] = Field(
        default=None,
        description='Income range such as "$100,000-$150,000", or "Not disclosed"',
    )
    high_potential_donor: bool = Field(
        description="Whether the person is likely to be a high-value donor"
    )
    high_potential_donor_rationale: str = Field(
        description="2-3 sentences citing the evidence behind the assessment"
    )


# ── Research runs ──────────────────────────────────────────────────────────


class RunState(str, Enum):
    """States of the research loop state machine."""

    SEARCHING = "searching"
    REFLECTING = "reflecting"
    SYNTHESIZING = "synthesizing"
    DONE = "done"
    FAILED = "failed"


class TerminationReason(str, Enum):
    """Why a research run stopped iterating."""

    SUFFICIENT_EVIDENCE = "sufficient-evidence"
    ITERATION_BUDGET_EXHAUSTED = "iteration-budget-exhausted"
    NO_FOLLOW_UP_QUERIES = "no-follow-up-queries"
    CANCELLED = "cancelled"
    FAILED = "failed"


class ResearchRun(BaseModel):
    """One investigation of a single subject.

    Owned by a single controller run; only ``summaries`` grows while the
    loop is active.
    """

    subject: str
    research_topic: str
    summaries: list[Summary] = Field(default_factory=list)
    iterations: int = 0
    state: RunState = RunState.SEARCHING
    termination_reason: Optional[TerminationReason] = None
    stage_usage: StageUsage = Field(default_factory=StageUsage)
    answer: Optional[str] = None
    citations: list[Citation] = Field(default_factory=list)
    person_identity: Optional[PersonIdentity] = None
    structured_data: Optional[DonorAssessment] = None
    error: Optional[str] = None
    started_at: datetime = Field(default_factory=_utcnow)
    completed_at: Optional[datetime] = None

    @property
    def token_usage(self) -> TokenUsage:
        return self.stage_usage.total

    @property
    def total_sources(self) -> int:
        return sum(len(s.sources) for s in self.summaries)

    @property
    def succeeded(self) -> bool:
        return self.state == RunState.DONE

    @property
    def queries(self) -> list[str]:
        return [s.query for s in self.summaries]

    def to_dict(self) -> dict[str, Any]:
        """JSON-ready dump including the derived totals."""
        data = self.model_dump(mode="json")
        data["token_usage"] = self.token_usage.model_dump()
        data["total_sources"] = self.total_sources
        return data


# ── Donors + persistence ───────────────────────────────────────────────────


class DonorProfile(BaseModel):
    """The donor fields the research pipeline uses to identify a person."""

    id: int
    full_name: str
    email: Optional[str] = None
    address: Optional[str] = None
    state: Optional[str] = None
    notes: Optional[str] = None
    high_potential_donor: Optional[bool] = None


class ResearchRecord(BaseModel):
    """A persisted research run stored in SQLite."""

    id: int
    subject_id: int
    research_topic: str
    run: ResearchRun
    is_live: bool
    version: int
    created_at: datetime


# ── Jobs ───────────────────────────────────────────────────────────────────


class JobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    RETRYING = "retrying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class JobRecord(BaseModel):
    """Scheduler-side view of one background job."""

    id: str
    job_type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    status: JobStatus = JobStatus.QUEUED
    attempts: int = 0
    result: Optional[dict[str, Any]] = None
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    finished_at: Optional[datetime] = None

    @property
    def finished(self) -> bool:
        return self.status in (JobStatus.SUCCEEDED, JobStatus.FAILED)


class BulkDispatchResult(BaseModel):
    """Acknowledgment returned by the bulk dispatcher."""

    job_id: str
    accepted: int


class BulkJobStatus(BaseModel):
    """Aggregated status of every per-subject job in a bulk dispatch."""

    job_id: str
    accepted: int
    queued: int = 0
    running: int = 0
    succeeded: int = 0
    failed: int = 0
    jobs: dict[int, JobRecord] = Field(default_factory=dict)

    @property
    def finished(self) -> bool:
        return self.succeeded + self.failed == self.accepted

"""
Donor research core package.

Modules
───────
models      Pydantic data models (ResearchRun, Summary, Source, Citation, ...)
llm         Claude client: free-text and structured generation with token usage
search      Google Custom Search client
crawler     Page fetching + main-text extraction
summarizer  Per-query search, crawl and summarise
identity    Person identification and relevance filtering of sources
reflection  Evidence sufficiency judgment and follow-up queries
citations   Deduplicated citations from a run's sources
synthesis   Final cited answer
extraction  Structured donor assessment from a finished run
researcher  Bounded search/reflect/synthesize loop controller
donors      Donor profile to research request
history     SQLite-backed donor and research-version storage
jobs        In-process background job scheduler with retry
bulk        Bulk donor research dispatch
"""

"""
AI Insight Synthesis Module

Single responsibility: transcript text -> structured insights dashboard.
Uses structured logging, pydantic validation, and async chunk processing with tenacity retry.
"""

import asyncio
import json
from typing import Dict, List, Optional

import structlog
from pydantic import BaseModel, Field, validator
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential
)

from config import ProcessingConfig
from core.categorize import CATEGORY_ICONS, TAXONOMY, Categorizer, KeywordCategorizer
from core.dashboard import (
    ChunkAnalysis,
    Chip,
    Dashboard,
    InsightItem,
    InsightSection,
    Insights,
    Metric,
    MindMap,
    Summary,
    TranscriptBlock,
    parse_chunk_response
)
from core.errors import ChunkingError, ProcessingError
from core.llm import Completion, LLMClient
from core.text import (
    deduplicate_sentences,
    estimate_token_count,
    extract_key_topics,
    split_into_chunks
)

# Configure structured logger
logger = structlog.get_logger(__name__)

MIN_CHUNK_TOKENS = 50

SYSTEM_PROMPT = (
    "You are an assistant specialized in analysing video transcriptions. "
    "Always return valid and complete JSON."
)

CHUNK_PROMPT = """You are an expert video summarizer and insight extractor. Given a video transcription, return a JSON object with the following structure, designed for a modern, interactive web dashboard.

Return ONLY valid JSON, no markdown or code blocks.

{
  "summary": {
    "text": "A concise, readable summary of the video (2-4 paragraphs, no bullet points).",
    "metrics": [
      {"label": "Duration", "value": "12:45"},
      {"label": "Main Topics", "value": "5"},
      {"label": "Key Insights", "value": "12"},
      {"label": "Complexity", "value": "Intermediate"}
    ],
    "topics": ["Main topic 1", "Main topic 2"]
  },
  "transcript": [{"time": "00:00", "text": "First sentences..."}],
  "insights": {
    "chips": [{"label": "15 insights extracted", "variant": "secondary"}],
    "sections": [
      {"title": "Section Title", "icon": "💻", "items": [
        {"text": "Insight text", "confidence": 95},
        {"text": "Another insight", "key": true}
      ]}
    ]
  },
  "mindMap": {
    "root": "Video Insights",
    "branches": [{"label": "Branch 1", "children": [{"label": "Child 1"}]}]
  }
}

- summary.text: a readable, human-like summary (not a list).
- transcript: array of {time, text} blocks, 1-3 sentences each.
- insights.sections: each with a title, emoji icon, and insight items.
- mindMap: hierarchical structure (root, branches, children).

Transcription to analyse:
"""

CONSOLIDATION_SYSTEM_PROMPT = (
    "You are an assistant specialized in consolidating summaries. Always return valid JSON."
)

CONSOLIDATION_PROMPT = """Consolidate the following partial results into a single dashboard. Return only JSON with the keys "summary" (text, metrics, topics), "transcript", "insights" (chips, sections) and "mindMap" (root, branches), no markdown or extra text.

Results to consolidate:
"""


class ProcessingStrategy(BaseModel):
    """Strategy for processing transcript"""

    method: str = Field(description="Processing method to use")
    requires_chunking: bool = Field(description="Whether chunking is required")
    chunk_count: Optional[int] = Field(None, description="Number of chunks if chunking")

    @validator('method')
    def validate_method(cls, v):
        valid_methods = ["single_pass", "chunked_concurrent"]
        if v not in valid_methods:
            raise ValueError(f"Method must be one of {valid_methods}")
        return v


class TextChunk(BaseModel):
    """Individual text chunk for processing"""

    text: str = Field(description="Chunk text content")
    chunk_index: int = Field(description="Chunk number (0-based)", ge=0)
    token_estimate: int = Field(default=0, description="Estimated token count", ge=0)

    @validator('token_estimate', always=True)
    def set_token_estimate(cls, v, values):
        if 'text' in values:
            return estimate_token_count(values['text'])
        return 0


class ProcessedChunk(BaseModel):
    """Normalized analysis of one chunk with its usage"""

    analysis: ChunkAnalysis
    original_chunk: TextChunk
    token_usage: Dict[str, int] = Field(description="Token usage statistics")
    processing_time: float = Field(description="Processing time in seconds")


class TokenUsage(BaseModel):
    """Running total of provider-reported usage for one synthesis run"""

    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    calls: int = 0

    def add(self, completion: Completion) -> None:
        self.input_tokens += completion.input_tokens
        self.output_tokens += completion.output_tokens
        self.total_tokens += completion.total_tokens
        self.calls += 1


class InsightResult(BaseModel):
    """Dashboard plus the usage figures billing needs"""

    dashboard: Dashboard
    tokens_used: int = Field(ge=0)
    input_tokens: int = 0
    output_tokens: int = 0
    llm_calls: int = 0
    chunk_count: int = 1
    strategy: ProcessingStrategy
    coverage: float = 1.0


def determine_processing_strategy(text: str, settings: ProcessingConfig) -> ProcessingStrategy:
    """Determine the processing strategy based on estimated transcript size"""

    token_count = estimate_token_count(text)
    threshold = settings.chunking_threshold_tokens

    logger.info("Determining processing strategy",
               token_estimate=token_count,
               threshold=threshold)

    if token_count <= threshold:
        return ProcessingStrategy(method="single_pass", requires_chunking=False, chunk_count=1)

    estimated_chunks = max(1, -(-token_count // settings.chunk_max_tokens))
    logger.info("Selected chunked concurrent processing strategy",
               estimated_chunks=estimated_chunks)
    return ProcessingStrategy(
        method="chunked_concurrent",
        requires_chunking=True,
        chunk_count=estimated_chunks
    )


def build_chunks(text: str, max_tokens: int, requires_chunking: bool) -> List[TextChunk]:
    """Sentence-packed chunks, or the whole text as a single chunk"""

    pieces = split_into_chunks(text, max_tokens) if requires_chunking else [text]
    if not pieces:
        raise ChunkingError("Failed to create text chunks")
    return [TextChunk(text=piece, chunk_index=i) for i, piece in enumerate(pieces)]


def format_duration(seconds: Optional[float]) -> str:
    if seconds is None or seconds < 0:
        return "N/A"
    total = int(round(seconds))
    hours, remainder = divmod(total, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes}:{secs:02d}"


def merge_analyses(
    analyses: List[ChunkAnalysis],
    categorizer: Categorizer,
    duration: Optional[float] = None
) -> Dashboard:
    """Manual consolidation: union topics, re-file items by category, concatenate branches"""

    logger.info("Merging chunk analyses", chunk_count=len(analyses))

    summary_text = " ".join(a.summary for a in analyses if a.summary).strip()

    topics: List[str] = []
    for analysis in analyses:
        for topic in analysis.topics:
            if topic not in topics:
                topics.append(topic)

    items = [item for a in analyses for section in a.sections for item in section.items]
    if not items:
        items = [InsightItem(text=topic) for topic in topics]

    grouped: Dict[str, List[InsightItem]] = {}
    seen_items = set()
    for item in items:
        if item.text in seen_items:
            continue
        seen_items.add(item.text)
        grouped.setdefault(categorizer.categorize(item.text), []).append(item)

    ordered_titles = [title for title, _, _ in TAXONOMY if title in grouped]
    ordered_titles += [title for title in grouped if title not in ordered_titles]
    sections = [
        InsightSection(title=title, icon=CATEGORY_ICONS.get(title, "💡"), items=grouped[title])
        for title in ordered_titles
    ]
    insight_count = sum(len(section.items) for section in sections)

    branches = [branch for a in analyses for branch in a.branches]
    transcript = [block for a in analyses for block in a.transcript]
    if not transcript:
        transcript = [TranscriptBlock(time="00:00", text="Transcript processing completed")]

    warnings: List[str] = []
    for analysis in analyses:
        for warning in analysis.warnings:
            if warning not in warnings:
                warnings.append(warning)

    return Dashboard(
        summary=Summary(
            text=summary_text or "Transcript analysis available",
            metrics=[
                Metric(label="Duration", value=format_duration(duration)),
                Metric(label="Main Topics", value=len(topics)),
                Metric(label="Key Insights", value=insight_count),
                Metric(label="Complexity", value="Intermediate"),
            ],
            topics=topics
        ),
        transcript=transcript,
        insights=Insights(
            chips=[
                Chip(label=f"{insight_count} insights extracted"),
                Chip(label=f"{len(topics)} main topics"),
                Chip(label=f"{len(analyses)} segments analyzed"),
            ],
            sections=sections
        ),
        mind_map=MindMap(branches=branches),
        warnings=warnings
    )


def measure_coverage(source_text: str, dashboard: Dashboard) -> float:
    """Share of salient source keywords that appear anywhere in the dashboard"""

    topics = extract_key_topics(source_text)
    if not topics:
        return 1.0
    document = json.dumps(dashboard.to_document(), ensure_ascii=False).lower()
    found = sum(1 for topic in topics if topic in document)
    return found / len(topics)


class InsightEngine:
    """Transcript -> dashboard, with chunking, retries and consolidation"""

    def __init__(
        self,
        llm: LLMClient,
        settings: ProcessingConfig,
        categorizer: Optional[Categorizer] = None
    ):
        self.llm = llm
        self.settings = settings
        self.categorizer = categorizer or KeywordCategorizer()

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self.settings.chunk_max_retries),
            wait=wait_exponential(
                multiplier=self.settings.retry_delay,
                min=self.settings.retry_delay,
                max=60
            ),
            retry=retry_if_exception_type(ProcessingError),
            reraise=True
        )

    async def _complete(self, system_prompt: str, user_prompt: str, max_tokens: int,
                        usage: TokenUsage) -> Completion:
        completion = await self.llm.complete(
            system_prompt,
            user_prompt,
            self.settings.temperature,
            max_tokens
        )
        usage.add(completion)
        return completion

    async def process_chunk(self, chunk: TextChunk, total_chunks: int,
                            usage: TokenUsage) -> ProcessedChunk:
        """Process a single chunk with retry logic"""

        loop = asyncio.get_running_loop()
        start_time = loop.time()

        prompt = CHUNK_PROMPT + chunk.text
        if total_chunks > 1:
            prompt = (
                f"Note: this is part {chunk.chunk_index + 1} of {total_chunks} "
                f"of a larger transcript.\n\n{prompt}"
            )

        async for attempt in self._retrying():
            with attempt:
                attempt_number = attempt.retry_state.attempt_number
                if attempt_number > 1:
                    logger.warning("Retrying chunk",
                                  chunk_index=chunk.chunk_index,
                                  attempt=attempt_number)
                completion = await self._complete(
                    SYSTEM_PROMPT, prompt, self.settings.max_tokens, usage
                )

        analysis = parse_chunk_response(completion.text)
        processing_time = loop.time() - start_time

        logger.info("Chunk processed successfully",
                   chunk_index=chunk.chunk_index,
                   kind=analysis.kind,
                   processing_time=processing_time,
                   total_tokens=completion.total_tokens)

        return ProcessedChunk(
            analysis=analysis,
            original_chunk=chunk,
            token_usage={
                'input_tokens': completion.input_tokens,
                'output_tokens': completion.output_tokens,
                'total_tokens': completion.total_tokens
            },
            processing_time=processing_time
        )

    async def process_chunks_concurrently(self, chunks: List[TextChunk],
                                          usage: TokenUsage) -> List[ProcessedChunk]:
        """Process chunks concurrently with semaphore limiting, preserving order"""

        logger.info("Starting concurrent chunk processing",
                   total_chunks=len(chunks),
                   max_concurrent=self.settings.max_concurrent_chunks)

        semaphore = asyncio.Semaphore(self.settings.max_concurrent_chunks)

        async def process_with_semaphore(chunk: TextChunk) -> ProcessedChunk:
            async with semaphore:
                return await self.process_chunk(chunk, len(chunks), usage)

        results = await asyncio.gather(
            *(process_with_semaphore(chunk) for chunk in chunks),
            return_exceptions=True
        )

        for result in results:
            if isinstance(result, BaseException):
                raise result
        return list(results)

    async def _process_with_resplit(self, text: str, strategy: ProcessingStrategy,
                                    usage: TokenUsage) -> List[ProcessedChunk]:
        """Run the batch; when a chunk exhausts its retries, halve the chunk budget and rerun"""

        budget = self.settings.chunk_max_tokens
        requires_chunking = strategy.requires_chunking
        last_error: Optional[Exception] = None

        for batch_attempt in range(1, self.settings.max_batch_attempts + 1):
            chunks = build_chunks(text, budget, requires_chunking)
            try:
                return await self.process_chunks_concurrently(chunks, usage)
            except ProcessingError as e:
                last_error = e
                logger.warning("Chunk batch failed, subdividing",
                              batch_attempt=batch_attempt,
                              chunk_count=len(chunks),
                              chunk_budget=budget,
                              error=str(e))
                requires_chunking = True
                budget = max(MIN_CHUNK_TOKENS, budget // 2)

        raise ProcessingError(
            f"Chunk processing failed after {self.settings.max_batch_attempts} attempts: {last_error}"
        ) from last_error

    async def _consolidate_with_llm(self, analyses: List[ChunkAnalysis],
                                    usage: TokenUsage) -> Optional[Dashboard]:
        blocks = "\n".join(
            f"Block {i + 1}: {a.model_dump_json(exclude={'dashboard', 'kind'})}"
            for i, a in enumerate(analyses)
        )
        try:
            completion = await self._complete(
                CONSOLIDATION_SYSTEM_PROMPT,
                CONSOLIDATION_PROMPT + blocks,
                self.settings.consolidation_max_tokens,
                usage
            )
        except ProcessingError as e:
            logger.warning("Consolidation call failed, merging manually", error=str(e))
            return None

        analysis = parse_chunk_response(completion.text)
        if analysis.kind != "dashboard":
            logger.warning("Consolidation reply unusable, merging manually", kind=analysis.kind)
            return None
        return analysis.dashboard

    async def consolidate(self, analyses: List[ChunkAnalysis], usage: TokenUsage,
                          duration: Optional[float] = None) -> Dashboard:
        if len(analyses) == 1 and analyses[0].kind == "dashboard":
            logger.info("Single chunk returned a full dashboard, skipping consolidation")
            return analyses[0].dashboard

        if len(analyses) > 1 and self.settings.consolidation_enabled:
            dashboard = await self._consolidate_with_llm(analyses, usage)
            if dashboard is not None:
                logger.info("Using model consolidation", chunk_count=len(analyses))
                return dashboard

        return merge_analyses(analyses, self.categorizer, duration)

    async def generate(self, transcript: str, duration: Optional[float] = None) -> InsightResult:
        """Main synthesis entry point"""

        deduplicated = deduplicate_sentences(transcript, self.settings.dedupe_min_length)
        if not deduplicated:
            raise ProcessingError("Transcript is empty after deduplication")

        logger.info("Starting insight generation",
                   original_chars=len(transcript),
                   deduplicated_chars=len(deduplicated))

        strategy = determine_processing_strategy(deduplicated, self.settings)
        usage = TokenUsage()

        processed = await self._process_with_resplit(deduplicated, strategy, usage)
        analyses = [p.analysis for p in processed]

        if len(processed) > 1 and not strategy.requires_chunking:
            strategy = ProcessingStrategy(method="chunked_concurrent", requires_chunking=True)
        strategy.chunk_count = len(processed)

        dashboard = await self.consolidate(analyses, usage, duration)

        coverage = measure_coverage(deduplicated, dashboard)
        if coverage < self.settings.coverage_warning_threshold:
            logger.warning("Low topic coverage in generated dashboard",
                          coverage=round(coverage, 2),
                          threshold=self.settings.coverage_warning_threshold)

        logger.info("Insight generation completed",
                   method=strategy.method,
                   chunk_count=len(processed),
                   llm_calls=usage.calls,
                   total_tokens=usage.total_tokens,
                   coverage=round(coverage, 2))

        return InsightResult(
            dashboard=dashboard,
            tokens_used=usage.total_tokens,
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            llm_calls=usage.calls,
            chunk_count=len(processed),
            strategy=strategy,
            coverage=coverage
        )

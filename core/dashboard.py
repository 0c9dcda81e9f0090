"""
Dashboard document models and LLM response normalization.

The model sometimes answers with the full dashboard, sometimes with an older
flat shape ({"summary": "...", "topics": [...]}) and sometimes with truncated
or fenced JSON. parse_chunk_response() turns any of these into a ChunkAnalysis
so consolidation only deals with one shape.
"""

import json
import re
from typing import Any, Dict, List, Literal, Optional, Union

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError, validator

logger = structlog.get_logger(__name__)

DEFAULT_ROOT = "Video Insights"
PLACEHOLDER_TOPIC = "transcript analysis"
PARSE_WARNING = "JSON parsing failed - plain text result"

_FENCE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL | re.IGNORECASE)
_MAX_REPAIR_CANDIDATES = 25


class Metric(BaseModel):
    label: str
    value: str

    @validator('value', pre=True)
    def coerce_value(cls, v):
        return str(v)


class Summary(BaseModel):
    text: str
    metrics: List[Metric] = Field(default_factory=list)
    topics: List[str] = Field(default_factory=list)


class TranscriptBlock(BaseModel):
    time: str = "00:00"
    text: str


class Chip(BaseModel):
    label: str
    variant: str = "secondary"


class InsightItem(BaseModel):
    text: str
    confidence: Optional[float] = None
    key: Optional[bool] = None
    quote: Optional[Union[bool, str]] = None


class InsightSection(BaseModel):
    title: str
    icon: str = "💡"
    items: List[InsightItem] = Field(default_factory=list)


class Insights(BaseModel):
    chips: List[Chip] = Field(default_factory=list)
    sections: List[InsightSection] = Field(default_factory=list)


class MindMapNode(BaseModel):
    label: str
    children: List["MindMapNode"] = Field(default_factory=list)


MindMapNode.model_rebuild()


class MindMap(BaseModel):
    root: str = DEFAULT_ROOT
    branches: List[MindMapNode] = Field(default_factory=list)


class Dashboard(BaseModel):
    """Canonical insights dashboard stored on a completed job"""

    model_config = ConfigDict(populate_by_name=True)

    summary: Summary
    transcript: List[TranscriptBlock] = Field(default_factory=list)
    insights: Insights = Field(default_factory=Insights)
    mind_map: MindMap = Field(default_factory=MindMap, alias="mindMap")
    warnings: List[str] = Field(default_factory=list)

    def to_document(self) -> Dict[str, Any]:
        """JSON-ready dict with the camelCase keys clients expect"""
        return self.model_dump(by_alias=True, exclude_none=True)


class ChunkAnalysis(BaseModel):
    """Normalized result of one chunk completion"""

    kind: Literal["dashboard", "partial", "placeholder"]
    dashboard: Optional[Dashboard] = None
    summary: str = ""
    topics: List[str] = Field(default_factory=list)
    sections: List[InsightSection] = Field(default_factory=list)
    branches: List[MindMapNode] = Field(default_factory=list)
    transcript: List[TranscriptBlock] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)

    @classmethod
    def from_dashboard(cls, dashboard: Dashboard) -> "ChunkAnalysis":
        return cls(
            kind="dashboard",
            dashboard=dashboard,
            summary=dashboard.summary.text,
            topics=list(dashboard.summary.topics),
            sections=list(dashboard.insights.sections),
            branches=list(dashboard.mind_map.branches),
            transcript=list(dashboard.transcript),
            warnings=list(dashboard.warnings),
        )

    @classmethod
    def placeholder(cls, raw: str) -> "ChunkAnalysis":
        text = raw.strip()
        if len(text) > 500:
            text = text[:497].rstrip() + "..."
        return cls(
            kind="placeholder",
            summary=text,
            topics=[PLACEHOLDER_TOPIC],
            branches=[MindMapNode(label=PLACEHOLDER_TOPIC)],
            warnings=[PARSE_WARNING],
        )


def strip_code_fences(text: str) -> str:
    cleaned = text.strip()
    match = _FENCE.match(cleaned)
    if match:
        return match.group(1).strip()
    if cleaned.startswith("```json"):
        cleaned = cleaned[7:]
    elif cleaned.startswith("```"):
        cleaned = cleaned[3:]
    if cleaned.endswith("```"):
        cleaned = cleaned[:-3]
    return cleaned.strip()


def _close_open_brackets(text: str) -> str:
    """Append the closers a truncated JSON prefix is missing"""
    stack = []
    in_string = False
    escaped = False
    for char in text:
        if in_string:
            if escaped:
                escaped = False
            elif char == '\\':
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char in '{[':
            stack.append('}' if char == '{' else ']')
        elif char in '}]' and stack:
            stack.pop()
    if in_string:
        return text
    return text + ''.join(reversed(stack))


def repair_truncated_json(text: str) -> Optional[Dict[str, Any]]:
    """Recover an object from truncated output.

    Walks back over closing braces, re-parsing the prefix ending at each one
    (with any still-open brackets closed) until something parses.
    """
    start = text.find('{')
    if start == -1:
        return None

    end = len(text)
    for _ in range(_MAX_REPAIR_CANDIDATES):
        end = text.rfind('}', start, end)
        if end == -1:
            break
        prefix = text[start:end + 1]
        for candidate in (prefix, _close_open_brackets(prefix)):
            try:
                result = json.loads(candidate)
            except json.JSONDecodeError:
                continue
            if isinstance(result, dict):
                return result

    return None


def _strings(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [str(v).strip() for v in value if isinstance(v, (str, int, float)) and str(v).strip()]


def _valid_items(model, values: Any) -> list:
    if not isinstance(values, list):
        return []
    valid = []
    for value in values:
        try:
            valid.append(model.model_validate(value))
        except ValidationError:
            continue
    return valid


def _is_full_dashboard(payload: Dict[str, Any]) -> bool:
    summary = payload.get('summary')
    return (
        isinstance(summary, dict)
        and isinstance(summary.get('text'), str)
        and isinstance(payload.get('insights'), dict)
        and isinstance(payload.get('mindMap'), dict)
    )


def analysis_from_payload(payload: Dict[str, Any]) -> ChunkAnalysis:
    """Normalize a parsed JSON object of any accepted shape"""

    if _is_full_dashboard(payload):
        try:
            return ChunkAnalysis.from_dashboard(Dashboard.model_validate(payload))
        except ValidationError as e:
            logger.debug("Dashboard-shaped payload failed validation", error=str(e))

    summary = payload.get('summary')
    topics = _strings(payload.get('topics'))
    if isinstance(summary, dict):
        topics = topics or _strings(summary.get('topics'))
        summary = summary.get('text')
    summary_text = summary.strip() if isinstance(summary, str) else ""

    sections: List[InsightSection] = []
    insights = payload.get('insights')
    if isinstance(insights, dict):
        sections = _valid_items(InsightSection, insights.get('sections'))
    loose_items = _strings(insights) + _strings(payload.get('key_points')) + _strings(payload.get('keyPoints'))
    if loose_items:
        sections.append(InsightSection(
            title="Key Insights",
            items=[InsightItem(text=item) for item in loose_items]
        ))

    branches: List[MindMapNode] = []
    mind_map = payload.get('mindMap')
    if isinstance(mind_map, dict):
        branches = _valid_items(MindMapNode, mind_map.get('branches'))
    if not branches:
        branches = [MindMapNode(label=topic) for topic in topics]

    return ChunkAnalysis(
        kind="partial",
        summary=summary_text,
        topics=topics,
        sections=sections,
        branches=branches,
        transcript=_valid_items(TranscriptBlock, payload.get('transcript')),
        warnings=_strings(payload.get('warnings')),
    )


def parse_chunk_response(raw: str) -> ChunkAnalysis:
    """Parse one model reply into a ChunkAnalysis, never raising"""

    cleaned = strip_code_fences(raw)
    payload: Optional[Dict[str, Any]] = None

    try:
        parsed = json.loads(cleaned)
        if isinstance(parsed, dict):
            payload = parsed
    except json.JSONDecodeError as e:
        logger.warning("Chunk response is not valid JSON, attempting repair",
                      error=str(e),
                      response_length=len(cleaned))
        payload = repair_truncated_json(cleaned)
        if payload is not None:
            logger.info("Recovered truncated chunk response")

    if payload is None:
        logger.warning("Chunk response unrecoverable, using placeholder",
                      response_tail=cleaned[-50:])
        return ChunkAnalysis.placeholder(cleaned)

    return analysis_from_payload(payload)

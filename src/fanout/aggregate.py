"""Combine the outputs of several agents into one document.

Everything here is a pure function of its inputs: the same request always
renders the same text.
"""

from __future__ import annotations

import json
import logging
import math
import re
from collections import Counter
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator

logger = logging.getLogger(__name__)

MAX_RESULTS = 20


class AggregationType(Enum):
    SUMMARY = "summary"
    MERGE = "merge"
    COMPARE = "compare"
    ANALYZE = "analyze"
    CUSTOM = "custom"


class OutputFormat(Enum):
    MARKDOWN = "markdown"
    TEXT = "text"
    JSON = "json"
    REPORT = "report"


class SortBy(Enum):
    NAME = "name"
    LENGTH = "length"
    TIMESTAMP = "timestamp"
    NONE = "none"


class ResultSource(BaseModel):
    name: str
    content: str
    metadata: dict[str, Any] | None = None

    @field_validator("name", "content")
    @classmethod
    def _not_blank(cls, value: str, info) -> str:
        if not value.strip():
            raise ValueError(f"result {info.field_name} must not be blank")
        return value


class AggregateRequest(BaseModel):
    """Input to :func:`aggregate`.

    Args:
        results: Between 1 and 20 named results.
        aggregation_type: How the results are combined.
        title: Top-level heading.
        format: Output rendering.
        include_metadata: Render each result's metadata.
        custom_instructions: Required for ``custom`` aggregation.
        group_by: Metadata key to group results by.
        sort_by: Result ordering applied before grouping.
        generated_on: Date string shown in the ``report`` front matter.
    """

    results: list[ResultSource] = Field(min_length=1, max_length=MAX_RESULTS)
    aggregation_type: AggregationType = AggregationType.SUMMARY
    title: str = "Aggregated Results"
    format: OutputFormat = OutputFormat.MARKDOWN
    include_metadata: bool = False
    custom_instructions: str | None = None
    group_by: str | None = None
    sort_by: SortBy = SortBy.NAME
    generated_on: str | None = None

    @model_validator(mode="after")
    def _custom_needs_instructions(self) -> AggregateRequest:
        if self.aggregation_type is AggregationType.CUSTOM and not (self.custom_instructions or "").strip():
            raise ValueError("custom_instructions are required for custom aggregation")
        return self


Groups = dict[str, list[ResultSource]]


# ----------------------------------------------------------------------
# Ordering and grouping
# ----------------------------------------------------------------------

def _timestamp(result: ResultSource) -> float:
    meta = result.metadata or {}
    value = meta.get("timestamp") or meta.get("createdAt") or 0
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return datetime.fromisoformat(str(value)).timestamp()
    except ValueError:
        return 0.0


def sort_results(results: list[ResultSource], sort_by: SortBy) -> list[ResultSource]:
    if sort_by is SortBy.NAME:
        return sorted(results, key=lambda r: r.name.casefold())
    if sort_by is SortBy.LENGTH:
        return sorted(results, key=lambda r: len(r.content), reverse=True)
    if sort_by is SortBy.TIMESTAMP:
        return sorted(results, key=_timestamp, reverse=True)
    return list(results)


def group_results(results: list[ResultSource], group_by: str | None) -> Groups:
    if not group_by:
        return {"All Results": list(results)}
    groups: Groups = {}
    for result in results:
        key = (result.metadata or {}).get(group_by) or "Ungrouped"
        groups.setdefault(str(key), []).append(result)
    return groups


def _flatten(groups: Groups) -> list[ResultSource]:
    return [r for results in groups.values() for r in results]


def _preview(text: str, limit: int) -> str:
    return text[:limit] + "..." if len(text) > limit else text


# ----------------------------------------------------------------------
# Aggregations
# ----------------------------------------------------------------------

def _summary(groups: Groups, request: AggregateRequest) -> str:
    results = _flatten(groups)
    total_length = sum(len(r.content) for r in results)
    out = [f"# {request.title}\n\n"]
    out.append("## Summary Overview\n\n")
    out.append(f"- **Total Results**: {len(results)}\n")
    out.append(f"- **Total Content Length**: {total_length:,} characters\n")
    out.append(f"- **Average Content Length**: {round(total_length / len(results)):,} characters\n")
    out.append(f"- **Groups**: {len(groups)}\n\n")
    for group, members in groups.items():
        if len(groups) > 1:
            out.append(f"## {group}\n\n")
        for result in members:
            out.append(f"### {result.name}\n\n")
            out.append(f"{_preview(result.content, 200)}\n\n")
            if request.include_metadata and result.metadata:
                out.append(f"**Metadata**: {json.dumps(result.metadata, indent=2, sort_keys=True)}\n\n")
            out.append(f"**Length**: {len(result.content)} characters\n\n")
            out.append("---\n\n")
    return "".join(out)


def _merge(groups: Groups, request: AggregateRequest) -> str:
    out = [f"# {request.title}\n\n"]
    for group, members in groups.items():
        if len(groups) > 1:
            out.append(f"## {group}\n\n")
        for result in members:
            out.append(f"### {result.name}\n\n{result.content}\n\n")
            if request.include_metadata and result.metadata:
                out.append("<details>\n<summary>Metadata</summary>\n\n")
                out.append(f"```json\n{json.dumps(result.metadata, indent=2, sort_keys=True)}\n```\n\n")
                out.append("</details>\n\n")
    return "".join(out)


def _compare(groups: Groups, request: AggregateRequest) -> str:
    results = _flatten(groups)
    shortest = min(results, key=lambda r: len(r.content))
    longest = max(results, key=lambda r: len(r.content))
    average = round(sum(len(r.content) for r in results) / len(results))

    out = [f"# {request.title}\n\n", "## Comparison Analysis\n\n"]
    out.append("### Content Length Analysis\n\n")
    out.append(f"- **Shortest**: {len(shortest.content)} characters ({shortest.name})\n")
    out.append(f"- **Longest**: {len(longest.content)} characters ({longest.name})\n")
    out.append(f"- **Average**: {average} characters\n\n")

    out.append("### Content Overview\n\n")
    for result in results:
        out.append(f"**{result.name}**: {_preview(result.content, 100)}\n\n")

    out.append("### Detailed Comparison\n\n")
    for group, members in groups.items():
        if len(groups) > 1:
            out.append(f"#### {group}\n\n")
        for result in members:
            out.append(f"**{result.name}**:\n")
            out.append(f"- Length: {len(result.content)} characters\n")
            out.append(f"- Content preview: {_preview(result.content, 150)}\n")
            if request.include_metadata and result.metadata:
                out.append(f"- Metadata: {', '.join(result.metadata)}\n")
            out.append("\n")
    return "".join(out)


def _top_words(results: list[ResultSource], limit: int = 10) -> list[tuple[str, int]]:
    words = " ".join(r.content for r in results).lower().split()
    counts = Counter(w for w in words if len(w) > 3)
    # Counter.most_common keeps first-seen order among equal counts.
    return counts.most_common(limit)


def _analyze(groups: Groups, request: AggregateRequest) -> str:
    results = _flatten(groups)
    lengths = [len(r.content) for r in results]
    total = sum(lengths)
    mean = total / len(lengths)
    stddev = math.sqrt(sum((n - mean) ** 2 for n in lengths) / len(lengths))

    out = [f"# {request.title}\n\n", "## Results Analysis\n\n"]
    out.append("### Statistical Summary\n\n")
    out.append(f"- **Total Results**: {len(results)}\n")
    out.append(f"- **Total Content**: {total:,} characters\n")
    out.append(f"- **Mean Length**: {round(mean):,} characters\n")
    out.append(f"- **Standard Deviation**: {round(stddev):,} characters\n")
    out.append(f"- **Length Range**: {min(lengths):,} - {max(lengths):,} characters\n\n")

    out.append("### Content Analysis\n\n")
    top = _top_words(results)
    if top:
        out.append("**Most Common Words**:\n")
        for word, count in top:
            out.append(f"- {word}: {count} occurrences\n")
        out.append("\n")

    out.append("### Pattern Analysis\n\n")
    for group, members in groups.items():
        if len(groups) > 1:
            out.append(f"#### {group}\n\n")
        group_avg = sum(len(r.content) for r in members) / len(members)
        out.append(f"- **Results in group**: {len(members)}\n")
        out.append(f"- **Average length**: {round(group_avg)} characters\n")
        out.append(f"- **Content variation**: {'Varied' if len(members) > 1 else 'Single result'}\n\n")
        for result in members:
            words = len(result.content.split())
            sentences = len(re.split(r"[.!?]+", result.content)) - 1
            out.append(f"**{result.name}**:\n")
            out.append(f"  - {len(result.content)} characters, ~{words} words, ~{sentences} sentences\n")
            if request.include_metadata and result.metadata:
                out.append(f"  - Metadata: {json.dumps(result.metadata, sort_keys=True)}\n")
        out.append("\n")
    return "".join(out)


def _custom(groups: Groups, request: AggregateRequest) -> str:
    instructions = request.custom_instructions or ""
    lowered = instructions.lower()
    out = [f"# {request.title}\n\n", "## Custom Aggregation\n\n"]
    out.append(f"**Instructions**: {instructions}\n\n")
    out.append("## Processing Results\n\n")
    for group, members in groups.items():
        if len(groups) > 1:
            out.append(f"### {group}\n\n")
        out.append(f"Applying custom instructions to {len(members)} result(s):\n\n")
        for result in members:
            out.append(f"#### {result.name}\n\n")
            if "extract" in lowered:
                lines = [line for line in result.content.splitlines() if line.strip()]
                out.append("**Key Information**:\n")
                out.extend(f"- {line}\n" for line in lines[:3])
                out.append("\n")
            elif "summarize" in lowered:
                out.append(f"**Summary**: {_preview(result.content, 200)}\n\n")
            else:
                out.append("**Content** (processed per custom instructions):\n\n")
                out.append(f"{result.content}\n\n")
            if request.include_metadata and result.metadata:
                out.append(f"**Metadata**: {json.dumps(result.metadata, indent=2, sort_keys=True)}\n\n")
            out.append("---\n\n")
    return "".join(out)


_AGGREGATORS = {
    AggregationType.SUMMARY: _summary,
    AggregationType.MERGE: _merge,
    AggregationType.COMPARE: _compare,
    AggregationType.ANALYZE: _analyze,
    AggregationType.CUSTOM: _custom,
}

_MARKDOWN_STRIP = [
    (re.compile(r"#{1,6}\s"), ""),
    (re.compile(r"\*\*(.*?)\*\*"), r"\1"),
    (re.compile(r"\*(.*?)\*"), r"\1"),
    (re.compile(r"`(.*?)`"), r"\1"),
    (re.compile(r"\[([^\]]*)\]\([^)]*\)"), r"\1"),
]


def format_output(content: str, request: AggregateRequest) -> str:
    if request.format is OutputFormat.TEXT:
        for pattern, repl in _MARKDOWN_STRIP:
            content = pattern.sub(repl, content)
        return content
    if request.format is OutputFormat.JSON:
        return json.dumps(
            {"title": request.title, "content": content, "format": "aggregated_results"},
            indent=2,
        )
    if request.format is OutputFormat.REPORT:
        header = ["---", 'title: "Aggregated Results Report"']
        if request.generated_on:
            header.append(f"date: {request.generated_on}")
        header.append('generated: "fanout multi-agent runtime"')
        header.append("---")
        return "\n".join(header) + "\n" + content
    return content


def aggregate(request: AggregateRequest) -> str:
    """Render *request* as a single document."""
    ordered = sort_results(request.results, request.sort_by)
    groups = group_results(ordered, request.group_by)
    logger.debug(
        f"Aggregating {len(request.results)} results "
        f"({request.aggregation_type.value}, {request.format.value})"
    )
    content = _AGGREGATORS[request.aggregation_type](groups, request)
    return format_output(content, request)


# ----------------------------------------------------------------------
# Delegation reports
# ----------------------------------------------------------------------

_STATUS_LABELS = [
    ("succeeded", "Succeeded"),
    ("failed", "Failed"),
    ("timedOut", "Timed out"),
    ("cancelled", "Cancelled"),
]


def _task_content(task) -> str:
    state = task.state.value
    if state == "succeeded":
        return task.result if task.result and task.result.strip() else "(empty result)"
    if state == "timedOut":
        return f"Timed out: {task.error or f'no result within {task.timeout}s'}"
    if state == "cancelled":
        return f"Cancelled: {task.error or 'cancelled'}"
    return f"Failed: {task.error or 'unknown error'}"


def aggregate_batch(
    tasks,
    *,
    title: str = "Task Delegation Results",
    aggregation_type: AggregationType = AggregationType.SUMMARY,
    format: OutputFormat = OutputFormat.MARKDOWN,
) -> str:
    """Build the report for a finished batch of sub-agent tasks.

    Every task appears, in batch order, including the ones that failed,
    timed out or were cancelled.  Batches larger than
    :data:`MAX_RESULTS` are rendered in parts.
    """
    tasks = list(tasks)
    header = ["## Execution Status\n", f"- Total tasks: {len(tasks)}"]
    for state, label in _STATUS_LABELS:
        header.append(f"- {label}: {sum(1 for t in tasks if t.state.value == state)}")

    sections = ["\n".join(header) + "\n"]
    for start in range(0, len(tasks), MAX_RESULTS):
        chunk = tasks[start:start + MAX_RESULTS]
        part_title = title
        if len(tasks) > MAX_RESULTS:
            part_title = f"{title} (part {start // MAX_RESULTS + 1})"
        instructions = None
        if aggregation_type is AggregationType.CUSTOM:
            instructions = "Report each task's outcome"
        request = AggregateRequest(
            results=[
                ResultSource(
                    name=f"{t.id}: {_preview(t.description, 60)}",
                    content=_task_content(t),
                    metadata={"status": t.state.value, "priority": t.priority.value},
                )
                for t in chunk
            ],
            aggregation_type=aggregation_type,
            title=part_title,
            format=format,
            sort_by=SortBy.NONE,
            custom_instructions=instructions,
        )
        sections.append(aggregate(request))
    return "\n".join(sections)

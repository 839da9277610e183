"""Output ingestion for lane agent processes.

Keeps the last N lines of stdout/stderr per lane and scans every line once
for progress indicators, error/warning signals, and token usage. Token counts
are parsed from free-form text, so costs derived from them are estimates.
"""

import logging
import math
import re
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, List, Literal, Optional, Pattern, Tuple

from warroom.constants import OUTPUT_MAX_ERRORS, OUTPUT_MAX_LINES, OUTPUT_MAX_WARNINGS
from warroom.core.run_documents import CostTracking, TokenUsage
from warroom.utils import now_iso, strip_ansi_codes

logger = logging.getLogger(__name__)

Stream = Literal["stdout", "stderr"]
ErrorType = Literal[
    "general", "api", "rate_limit", "auth", "connection", "timeout", "crash", "signal", "oom", "permission"
]


@dataclass(frozen=True)
class ModelPricing:
    """USD per million tokens."""

    input: float
    output: float
    cache_read: float
    cache_write: float


_SONNET = ModelPricing(3.0, 15.0, 0.30, 3.75)
_OPUS = ModelPricing(15.0, 75.0, 1.50, 18.75)
_HAIKU = ModelPricing(0.80, 4.0, 0.08, 1.0)

MODEL_PRICING: Dict[str, ModelPricing] = {
    "claude-sonnet-4-20250514": _SONNET,
    "claude-opus-4-20250514": _OPUS,
    "claude-3-5-sonnet-20241022": _SONNET,
    "claude-3-opus-20240229": _OPUS,
    "claude-3-5-haiku-20241022": _HAIKU,
    "default": _SONNET,
}

# Order matters: the first pattern that matches a line is the only one applied.
TOKEN_PATTERNS: List[Pattern[str]] = [
    re.compile(r"(?:total\s+)?tokens?:\s*([\d,]+)", re.IGNORECASE),
    re.compile(r"input:\s*([\d,]+)\s*tokens?,?\s*output:\s*([\d,]+)\s*tokens?", re.IGNORECASE),
    re.compile(r"usage:\s*([\d,]+)\s*input,?\s*([\d,]+)\s*output", re.IGNORECASE),
    re.compile(r"\(([\d,]+)\s*tokens?\)", re.IGNORECASE),
    re.compile(r"prompt\s*tokens?:\s*([\d,]+).*?completion\s*tokens?:\s*([\d,]+)", re.IGNORECASE),
    re.compile(r"cache\s*read(?:\s*tokens?)?:\s*([\d,]+)", re.IGNORECASE),
    re.compile(r"cache\s*write(?:\s*tokens?)?:\s*([\d,]+)", re.IGNORECASE),
]

MODEL_PATTERNS: List[Pattern[str]] = [
    re.compile(r"model[:\s]+([a-z0-9-]+)", re.IGNORECASE),
    re.compile(r"using\s+([a-z0-9-]+)", re.IGNORECASE),
    re.compile(r"(claude-[a-z0-9-]+)", re.IGNORECASE),
]

PROGRESS_PATTERNS: List[Pattern[str]] = [
    re.compile(r"(\d+(?:\.\d+)?%)"),
    re.compile(r"\[(\d+)/(\d+)\]"),
    re.compile(r"step\s+(\d+)\s+of\s+(\d+)", re.IGNORECASE),
    re.compile(r"processing\s+(\d+)\s+of\s+(\d+)", re.IGNORECASE),
    re.compile(r"completed\s+(\d+)\s+of\s+(\d+)", re.IGNORECASE),
]

ERROR_PATTERNS: List[Tuple[Pattern[str], ErrorType]] = [
    (re.compile(r"error:?\s*(.+)", re.IGNORECASE), "general"),
    (re.compile(r"API\s*error", re.IGNORECASE), "api"),
    (re.compile(r"rate\s*limit", re.IGNORECASE), "rate_limit"),
    (re.compile(r"authentication\s*(failed|error)", re.IGNORECASE), "auth"),
    (re.compile(r"connection\s*(failed|error|refused)", re.IGNORECASE), "connection"),
    (re.compile(r"timeout", re.IGNORECASE), "timeout"),
    (re.compile(r"crash(ed)?", re.IGNORECASE), "crash"),
    (re.compile(r"SIGTERM|SIGKILL|signal\s+\d+", re.IGNORECASE), "signal"),
    (re.compile(r"out\s+of\s+memory|OOM", re.IGNORECASE), "oom"),
    (re.compile(r"permission\s+denied", re.IGNORECASE), "permission"),
]

WARNING_PATTERNS: List[Pattern[str]] = [
    re.compile(r"warning:?\s*(.+)", re.IGNORECASE),
    re.compile(r"deprecated", re.IGNORECASE),
    re.compile(r"retry(ing)?", re.IGNORECASE),
]

_TOKEN_HINTS = ("token", "usage", "cache")


@dataclass
class OutputLine:
    timestamp: str
    stream: Stream
    content: str
    line_number: int


@dataclass
class ProgressIndicator:
    type: Literal["percentage", "step"]
    value: float
    raw: str
    total: Optional[int] = None


@dataclass
class DetectedError:
    timestamp: str
    type: ErrorType
    message: str
    line_number: int


@dataclass
class LaneOutputState:
    """Point-in-time copy of a lane buffer."""

    lane_id: str
    lines: List[OutputLine]
    total_lines: int
    errors: List[DetectedError]
    warnings: List[str]
    started_at: str
    last_activity_at: str
    token_usage: TokenUsage
    cost_tracking: CostTracking
    last_progress: Optional[ProgressIndicator] = None


def _to_int(raw: str) -> int:
    return int(raw.replace(",", ""))


def pricing_for(model: Optional[str]) -> ModelPricing:
    """Price tier for a detected model name, falling back to ``default``."""
    if not model:
        return MODEL_PRICING["default"]
    if model in MODEL_PRICING:
        return MODEL_PRICING[model]
    for family, tier in (("opus", _OPUS), ("haiku", _HAIKU), ("sonnet", _SONNET)):
        if family in model:
            return tier
    return MODEL_PRICING["default"]


def parse_progress(content: str) -> Optional[ProgressIndicator]:
    """First progress indicator in ``content``, if any."""
    for pattern in PROGRESS_PATTERNS:
        match = pattern.search(content)
        if not match:
            continue
        first = match.group(1)
        if first.endswith("%"):
            return ProgressIndicator(type="percentage", value=float(first[:-1]), raw=match.group(0))
        if match.lastindex and match.lastindex >= 2:
            return ProgressIndicator(
                type="step", value=int(first), total=int(match.group(2)), raw=match.group(0)
            )
        return None
    return None


def classify_error(content: str) -> Optional[ErrorType]:
    for pattern, error_type in ERROR_PATTERNS:
        if pattern.search(content):
            return error_type
    return None


def is_warning(content: str) -> bool:
    return any(pattern.search(content) for pattern in WARNING_PATTERNS)


class LaneOutputBuffer:
    """Bounded output buffer and signal parser for a single lane."""

    def __init__(
        self,
        lane_id: str,
        max_lines: int = OUTPUT_MAX_LINES,
        max_errors: int = OUTPUT_MAX_ERRORS,
        max_warnings: int = OUTPUT_MAX_WARNINGS,
    ) -> None:
        self.lane_id = lane_id
        self._max_lines = max_lines
        self._max_errors = max_errors
        self._max_warnings = max_warnings
        self._reset()

    def _reset(self) -> None:
        now = now_iso()
        self._lines: Deque[OutputLine] = deque(maxlen=self._max_lines)
        self._errors: Deque[DetectedError] = deque(maxlen=self._max_errors)
        self._warnings: Deque[str] = deque(maxlen=self._max_warnings)
        self.total_lines = 0
        self.last_progress: Optional[ProgressIndicator] = None
        self.started_at = now
        self.last_activity_at = now
        self.detected_model: Optional[str] = None
        self.split_heuristic_applied = False
        self._usage = TokenUsage(updated_at=now)

    def add_line(self, content: str, stream: Stream = "stdout") -> OutputLine:
        """Append a line and scan it for signals."""
        self.total_lines += 1
        self.last_activity_at = now_iso()
        line = OutputLine(
            timestamp=self.last_activity_at,
            stream=stream,
            content=content,
            line_number=self.total_lines,
        )
        self._lines.append(line)
        self._scan(strip_ansi_codes(content), line.line_number)
        return line

    def _scan(self, content: str, line_number: int) -> None:
        progress = parse_progress(content)
        if progress is not None:
            self.last_progress = progress

        error_type = classify_error(content)
        if error_type is not None:
            self._errors.append(
                DetectedError(
                    timestamp=self.last_activity_at,
                    type=error_type,
                    message=content.strip(),
                    line_number=line_number,
                )
            )

        if is_warning(content):
            self._warnings.append(content.strip())

        self._parse_tokens(content)

    def _parse_tokens(self, content: str) -> None:
        lower = content.lower()
        if not any(hint in lower for hint in _TOKEN_HINTS):
            return

        if not self.detected_model:
            for pattern in MODEL_PATTERNS:
                model_match = pattern.search(content)
                if model_match:
                    self.detected_model = model_match.group(1).lower()
                    break

        usage = self._usage
        for pattern in TOKEN_PATTERNS:
            match = pattern.search(content)
            if not match:
                continue
            if match.lastindex and match.lastindex >= 2:
                usage.input_tokens += _to_int(match.group(1))
                usage.output_tokens += _to_int(match.group(2))
            else:
                tokens = _to_int(match.group(1))
                if "input" in lower or "prompt" in lower:
                    usage.input_tokens += tokens
                elif "output" in lower or "completion" in lower:
                    usage.output_tokens += tokens
                elif "cache read" in lower:
                    usage.cache_read_tokens += tokens
                elif "cache write" in lower:
                    usage.cache_write_tokens += tokens
                elif "total" in lower and usage.input_tokens == 0 and usage.output_tokens == 0:
                    # No breakdown seen yet: approximate 80% input, 20% output.
                    usage.input_tokens = math.floor(tokens * 0.8)
                    usage.output_tokens = math.floor(tokens * 0.2)
                    self.split_heuristic_applied = True
            break

        usage.total_tokens = usage.input_tokens + usage.output_tokens
        usage.updated_at = self.last_activity_at

    @property
    def token_usage(self) -> TokenUsage:
        return self._usage.model_copy()

    def cost_tracking(self) -> CostTracking:
        """Estimated spend for this lane so far."""
        usage = self._usage
        price = pricing_for(self.detected_model)
        total = (
            usage.input_tokens * price.input
            + usage.output_tokens * price.output
            + usage.cache_read_tokens * price.cache_read
            + usage.cache_write_tokens * price.cache_write
        ) / 1_000_000
        return CostTracking(
            model=self.detected_model,
            token_usage=usage.model_copy(),
            estimated_cost_usd=round(total, 3),
            is_estimate=True,
            split_heuristic_applied=self.split_heuristic_applied,
        )

    @property
    def errors(self) -> List[DetectedError]:
        return list(self._errors)

    @property
    def warnings(self) -> List[str]:
        return list(self._warnings)

    def recent_lines(self, count: int = 100) -> List[OutputLine]:
        if count <= 0:
            return []
        return list(self._lines)[-count:]

    def state(self) -> LaneOutputState:
        return LaneOutputState(
            lane_id=self.lane_id,
            lines=list(self._lines),
            total_lines=self.total_lines,
            last_progress=self.last_progress,
            errors=self.errors,
            warnings=self.warnings,
            started_at=self.started_at,
            last_activity_at=self.last_activity_at,
            token_usage=self.token_usage,
            cost_tracking=self.cost_tracking(),
        )

    def clear(self) -> None:
        self._reset()


@dataclass
class RunCostSummary:
    total_cost_usd: float = 0.0
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    lanes: Dict[str, CostTracking] = field(default_factory=dict)


class OutputBufferManager:
    """Lane output buffers keyed by run slug, then lane id."""

    def __init__(
        self,
        max_lines: int = OUTPUT_MAX_LINES,
        max_errors: int = OUTPUT_MAX_ERRORS,
        max_warnings: int = OUTPUT_MAX_WARNINGS,
    ) -> None:
        self._max_lines = max_lines
        self._max_errors = max_errors
        self._max_warnings = max_warnings
        self._buffers: Dict[str, Dict[str, LaneOutputBuffer]] = {}

    def get_buffer(self, run_slug: str, lane_id: str) -> LaneOutputBuffer:
        run_buffers = self._buffers.setdefault(run_slug, {})
        buffer = run_buffers.get(lane_id)
        if buffer is None:
            buffer = LaneOutputBuffer(lane_id, self._max_lines, self._max_errors, self._max_warnings)
            run_buffers[lane_id] = buffer
        return buffer

    def _find(self, run_slug: str, lane_id: str) -> Optional[LaneOutputBuffer]:
        return self._buffers.get(run_slug, {}).get(lane_id)

    def add_line(self, run_slug: str, lane_id: str, content: str, stream: Stream = "stdout") -> OutputLine:
        return self.get_buffer(run_slug, lane_id).add_line(content, stream)

    def get_lane_output(self, run_slug: str, lane_id: str) -> Optional[LaneOutputState]:
        buffer = self._find(run_slug, lane_id)
        return buffer.state() if buffer else None

    def get_recent_lines(self, run_slug: str, lane_id: str, count: int = 100) -> List[OutputLine]:
        buffer = self._find(run_slug, lane_id)
        return buffer.recent_lines(count) if buffer else []

    def get_run_outputs(self, run_slug: str) -> Dict[str, LaneOutputState]:
        return {lane_id: buf.state() for lane_id, buf in self._buffers.get(run_slug, {}).items()}

    def has_errors(self, run_slug: str, lane_id: str) -> bool:
        buffer = self._find(run_slug, lane_id)
        return bool(buffer and buffer.errors)

    def get_lane_errors(self, run_slug: str, lane_id: str) -> List[DetectedError]:
        buffer = self._find(run_slug, lane_id)
        return buffer.errors if buffer else []

    def get_lane_cost_tracking(self, run_slug: str, lane_id: str) -> Optional[CostTracking]:
        buffer = self._find(run_slug, lane_id)
        return buffer.cost_tracking() if buffer else None

    def get_run_cost_tracking(self, run_slug: str) -> RunCostSummary:
        summary = RunCostSummary()
        for lane_id, buffer in self._buffers.get(run_slug, {}).items():
            cost = buffer.cost_tracking()
            summary.lanes[lane_id] = cost
            summary.total_cost_usd += cost.estimated_cost_usd
            summary.total_input_tokens += cost.token_usage.input_tokens
            summary.total_output_tokens += cost.token_usage.output_tokens
        summary.total_cost_usd = round(summary.total_cost_usd, 3)
        return summary

    def clear_lane(self, run_slug: str, lane_id: str) -> None:
        buffer = self._find(run_slug, lane_id)
        if buffer:
            buffer.clear()

    def clear_run(self, run_slug: str) -> None:
        if self._buffers.pop(run_slug, None) is not None:
            logger.debug("Cleared output buffers for run %s", run_slug)

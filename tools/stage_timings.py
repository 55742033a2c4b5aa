#!/usr/bin/env python3
"""
Render a proportional PNG timeline of stage timings found in free-form logs.

Only lines containing a "stage start" or "stage end" marker are considered.
Their payload is whatever follows the last colon on the line and reads
`<stage name>,<epoch millis>`, so timestamp prefixes such as `12:03:44` in
front of the marker are harmless. Start and end markers are paired by stage
name, every timestamp is shifted against the earliest one observed and scaled
to seconds, and each stage becomes a horizontal bar whose offset and width are
proportional to the latest normalized timestamp.

`compute_timeline` is the pure core (text in, `Timeline` out). The functions
after `layout_bars` only draw or serialize its result.
"""

from __future__ import annotations

import argparse
import json
import math
import re
import sys
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple


import numpy as np

try:
    import matplotlib
    matplotlib.use("Agg", force=True)
    import matplotlib.pyplot as plt
except ImportError as exc:  # pragma: no cover - dependency guard
    print(
        "[error] matplotlib is required for this script. "
        "Install it with `pip install matplotlib`.",
        file=sys.stderr,
    )
    raise SystemExit(1) from exc


START_MARKER = "stage start"
END_MARKER = "stage end"
TRACK_WIDTH = 900.0
DISPLAY_PRECISION = 3
BAR_HEIGHT = 0.7

PALETTE: Tuple[str, ...] = (
    "#2F855A",
    "#B83280",
    "#C53030",
    "#2B6CB0",
    "#C05621",
    "#B7791F",
    "#2C7A7B",
    "#6B46C1",
)

# Lenient integer prefix: "  42ms" -> 42, "abc" -> no match.
LEADING_INTEGER = re.compile(r"\s*([+-]?[0-9]+)")


class MarkerKind(Enum):
    START = "start"
    END = "end"


@dataclass(frozen=True)
class Marker:
    name: str
    timestamp: float
    kind: MarkerKind


@dataclass
class StageInterval:
    name: str
    start: float = 0
    end: float = 0


@dataclass(frozen=True)
class NormalizedInterval:
    name: str
    start: float
    end: float

    @property
    def duration(self) -> float:
        return self.end - self.start


@dataclass(frozen=True)
class LayoutBar:
    left: float
    width: float
    color_index: int

    @property
    def color(self) -> str:
        return PALETTE[self.color_index]


@dataclass
class Timeline:
    """Result of one parse pass.

    `records` are sorted by start. `total` is last end minus first start and
    is not clamped. `max_timestamp` is the shared denominator for bar layout.
    """

    records: List[NormalizedInterval] = field(default_factory=list)
    total: float = 0.0
    max_timestamp: float = 0.0
    min_timestamp: float = 0.0

    @property
    def has_scale(self) -> bool:
        return math.isfinite(self.max_timestamp) and self.max_timestamp > 0


def iter_lines(text: str) -> Iterator[str]:
    begin = 0
    while True:
        end = text.find("\n", begin)
        if end == -1:
            yield text[begin:]
            return
        yield text[begin:end]
        begin = end + 1


@dataclass(frozen=True)
class CandidateLines:
    """Lines of `text` carrying a start or end marker, in input order.

    Matching is an exact-case substring test. Each iteration walks the text
    again, so the same instance can be consumed more than once.
    """

    text: str
    start_marker: str = START_MARKER
    end_marker: str = END_MARKER

    def __iter__(self) -> Iterator[str]:
        for line in iter_lines(self.text):
            if self.start_marker in line or self.end_marker in line:
                yield line


def parse_timestamp(text: str) -> float:
    match = LEADING_INTEGER.match(text)
    if not match:
        return math.nan

    digits = match.group(1)
    overflow = -math.inf if digits.startswith("-") else math.inf
    try:
        value = int(digits)
        float(value)
    except (ValueError, OverflowError):
        # Past the interpreter's digit limit or the float range.
        return overflow
    return value


def parse_marker(line: str, start_marker: str = START_MARKER) -> Marker:
    # A line holding both markers counts as a start.
    kind = MarkerKind.START if start_marker in line else MarkerKind.END
    payload = line.split(":")[-1]
    name, comma, timestamp_text = payload.partition(",")
    if not comma:
        return Marker(name=payload, timestamp=math.nan, kind=kind)
    return Marker(name=name, timestamp=parse_timestamp(timestamp_text), kind=kind)


def aggregate_markers(markers: Iterable[Marker]) -> List[StageInterval]:
    intervals: Dict[str, StageInterval] = {}

    for marker in markers:
        interval = intervals.get(marker.name)
        if interval is None:
            interval = intervals[marker.name] = StageInterval(name=marker.name)
        # Later markers overwrite earlier ones of the same kind.
        if marker.kind is MarkerKind.START:
            interval.start = marker.timestamp
        else:
            interval.end = marker.timestamp

    return list(intervals.values())


def reduce_ignoring_nan(ufunc: np.ufunc, values: Sequence[float]) -> float:
    if not values:
        return 0.0
    return float(ufunc.reduce(np.asarray(values, dtype=float)))


def start_sort_key(record: NormalizedInterval) -> Tuple[bool, float]:
    if math.isnan(record.start):
        return (True, 0.0)
    return (False, record.start)


def normalize_intervals(intervals: Sequence[StageInterval]) -> Timeline:
    """Shift every interval against the global minimum and scale to seconds.

    The minimum and maximum skip NaN fields, so one malformed marker leaves
    the other records usable. This differs on purpose from the browser tool
    this replaces, where a single NaN turned every record into NaN.
    """
    # Untouched 0 defaults of incomplete stages take part in the minimum.
    min_timestamp = reduce_ignoring_nan(
        np.fmin, [value for item in intervals for value in (item.start, item.end)]
    )

    records = [
        NormalizedInterval(
            name=item.name,
            start=(item.start - min_timestamp) / 1000,
            end=(item.end - min_timestamp) / 1000,
        )
        for item in intervals
    ]
    records.sort(key=start_sort_key)

    max_timestamp = reduce_ignoring_nan(
        np.fmax, [value for record in records for value in (record.start, record.end)]
    )
    total = records[-1].end - records[0].start if records else 0.0

    return Timeline(
        records=records,
        total=total,
        max_timestamp=max_timestamp,
        min_timestamp=min_timestamp,
    )


def compute_timeline(
    text: str,
    start_marker: str = START_MARKER,
    end_marker: str = END_MARKER,
) -> Timeline:
    """Turn raw log text into sorted, normalized stage records.

    Never raises for malformed input: unparsable timestamps surface as NaN
    and stages missing one of their markers keep a 0 default for it.
    """
    lines = CandidateLines(text, start_marker, end_marker)
    markers = (parse_marker(line, start_marker) for line in lines)
    return normalize_intervals(aggregate_markers(markers))


def compute_bar(
    record: NormalizedInterval,
    max_timestamp: float,
    index: int,
    track_width: float = TRACK_WIDTH,
) -> Optional[LayoutBar]:
    if not max_timestamp:
        return None
    return place_bar(record, max_timestamp, index, track_width)


def place_bar(
    record: NormalizedInterval,
    max_timestamp: float,
    index: int,
    track_width: float,
) -> LayoutBar:
    return LayoutBar(
        left=(record.start / max_timestamp) * track_width,
        width=(record.duration / max_timestamp) * track_width,
        color_index=index % len(PALETTE),
    )


def layout_bars(timeline: Timeline, track_width: float = TRACK_WIDTH) -> List[LayoutBar]:
    if not timeline.records or not timeline.has_scale:
        return []
    return [
        place_bar(record, timeline.max_timestamp, index, track_width)
        for index, record in enumerate(timeline.records)
    ]


def round_to_precision(value: float, digits: int = DISPLAY_PRECISION) -> float:
    if not math.isfinite(value):
        return value
    return round(value, digits)


def format_seconds(value: float, digits: int = DISPLAY_PRECISION) -> str:
    rounded = round_to_precision(value, digits)
    if not math.isfinite(rounded):
        return str(rounded)
    text = f"{rounded:.{digits}f}".rstrip("0").rstrip(".")
    return "0" if text in ("", "-0") else text


def stage_label(record: NormalizedInterval) -> str:
    return f"{record.name}, {format_seconds(record.duration)}s"


def timeline_title(timeline: Timeline) -> str:
    return f"Timings - {format_seconds(timeline.total)}s"


def find_degenerate_records(timeline: Timeline) -> List[Tuple[NormalizedInterval, str]]:
    problems: List[Tuple[NormalizedInterval, str]] = []
    for record in timeline.records:
        if math.isnan(record.duration):
            problems.append((record, "has no usable duration (malformed marker line?)"))
        elif record.duration < 0:
            problems.append((record, "ends before it starts (missing start or end marker?)"))
    return problems


def format_report(timeline: Timeline) -> str:
    lines = [timeline_title(timeline)]
    for record in timeline.records:
        lines.append(
            f"  {stage_label(record)}"
            f"  [{format_seconds(record.start)}s -> {format_seconds(record.end)}s]"
        )
    return "\n".join(lines)


def json_number(value: float) -> Optional[float]:
    if not math.isfinite(value):
        return None
    return value


def timeline_to_dict(timeline: Timeline, track_width: float = TRACK_WIDTH) -> Dict[str, Any]:
    bars = layout_bars(timeline, track_width)
    records: List[Dict[str, Any]] = []
    for index, record in enumerate(timeline.records):
        bar = bars[index] if bars else None
        records.append(
            {
                "name": record.name,
                "start": json_number(record.start),
                "end": json_number(record.end),
                "duration": json_number(record.duration),
                "left": json_number(bar.left) if bar else None,
                "width": json_number(bar.width) if bar else None,
                "color": PALETTE[index % len(PALETTE)],
            }
        )
    return {
        "records": records,
        "total": json_number(timeline.total),
        "maxTimestamp": json_number(timeline.max_timestamp),
    }


def pick_figure_size(
    record_count: int,
    width: Optional[float],
    height: Optional[float],
) -> Tuple[float, float]:
    if width is None:
        width = 12.0

    if height is None:
        base_height = record_count * 0.42 + 1.6
        height = max(2.5, min(60.0, base_height))

    return width, height


def render(
    timeline: Timeline,
    output_path: Path,
    track_width: float = TRACK_WIDTH,
    width: Optional[float] = None,
    height: Optional[float] = None,
    dpi: int = 150,
) -> None:
    figure_width, figure_height = pick_figure_size(len(timeline.records), width, height)

    fig, ax = plt.subplots(figsize=(figure_width, figure_height), dpi=dpi)

    bars = layout_bars(timeline, track_width)
    positions = np.arange(len(timeline.records))

    for position, bar in zip(positions, bars):
        if not (math.isfinite(bar.left) and math.isfinite(bar.width)):
            continue
        ax.barh(
            position,
            bar.width,
            left=bar.left,
            height=BAR_HEIGHT,
            color=bar.color,
            edgecolor="none",
            zorder=2,
        )

    ax.set_yticks(positions)
    ax.set_yticklabels([stage_label(record) for record in timeline.records], fontsize=8)
    ax.set_xlim(0, track_width)
    if timeline.records:
        ax.set_ylim(len(timeline.records) - 0.5, -0.5)
    ax.set_xlabel("Track position (px)")
    ax.set_title(timeline_title(timeline))
    ax.grid(True, axis="x", linestyle="--", linewidth=0.6, alpha=0.4)

    plt.tight_layout()

    output_path.parent.mkdir(parents=True, exist_ok=True)
    fig.savefig(output_path)
    plt.close(fig)


def build_argument_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Generate a stage timing PNG from log text with stage start/end markers"
    )
    parser.add_argument(
        "-i",
        "--input",
        default="-",
        help="Path to the log text, or - for stdin (default: %(default)s)",
    )
    parser.add_argument(
        "-o",
        "--output",
        default="stage_timings.png",
        help="Path to the output PNG file (default: %(default)s)",
    )
    parser.add_argument(
        "--json",
        default=None,
        help="Also write the timeline records as JSON to this path",
    )
    parser.add_argument(
        "--report",
        action="store_true",
        help="Print a plain text summary of the timeline",
    )
    parser.add_argument(
        "--no-png",
        action="store_true",
        help="Skip rendering the PNG",
    )
    parser.add_argument(
        "--track-width",
        type=float,
        default=TRACK_WIDTH,
        help="Pixel budget for the full timeline span (default: %(default)s)",
    )
    parser.add_argument(
        "--start-marker",
        default=START_MARKER,
        help="Substring identifying stage start lines (default: %(default)r)",
    )
    parser.add_argument(
        "--end-marker",
        default=END_MARKER,
        help="Substring identifying stage end lines (default: %(default)r)",
    )
    parser.add_argument(
        "--width",
        type=float,
        default=None,
        help="Override the figure width in inches",
    )
    parser.add_argument(
        "--height",
        type=float,
        default=None,
        help="Override the figure height in inches",
    )
    parser.add_argument(
        "--dpi",
        type=int,
        default=150,
        help="Dots per inch of the generated PNG (default: %(default)s)",
    )
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_argument_parser()
    args = parser.parse_args(argv)

    if args.input == "-":
        source = "<stdin>"
        text = sys.stdin.buffer.read().decode("utf-8", errors="replace")
    else:
        input_path = Path(args.input).expanduser().resolve()
        if not input_path.exists():
            print(f"[error] input log not found: {input_path}", file=sys.stderr)
            return 1
        source = str(input_path)
        text = input_path.read_text(encoding="utf-8", errors="replace")

    timeline = compute_timeline(text, args.start_marker, args.end_marker)
    if not timeline.records:
        print(f"[error] no stage markers found in {source}", file=sys.stderr)
        return 1

    for record, problem in find_degenerate_records(timeline):
        print(f"[warn] stage {record.name!r} {problem}", file=sys.stderr)
    if not timeline.has_scale:
        print(
            f"[warn] latest timestamp is {timeline.max_timestamp}, skipping bar layout",
            file=sys.stderr,
        )

    if args.report:
        print(format_report(timeline))

    if args.json:
        json_path = Path(args.json).expanduser().resolve()
        json_path.parent.mkdir(parents=True, exist_ok=True)
        json_path.write_text(
            json.dumps(timeline_to_dict(timeline, args.track_width), indent=2) + "\n",
            encoding="utf-8",
        )
        print(f"[ok] wrote {json_path}")

    if not args.no_png:
        output_path = Path(args.output).expanduser().resolve()
        render(timeline, output_path, args.track_width, args.width, args.height, args.dpi)
        print(f"[ok] wrote {output_path}")

    return 0


if __name__ == "__main__":
    sys.exit(main())

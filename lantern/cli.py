"""Command-line entry point: estimate lantern metrics for one recorded page load."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Any, Dict, List, Optional

from .artifacts import METRIC_NAMES, ArtifactCache, MetricComputationInput, compute_lantern_metrics
from .config import Settings, load_settings
from .errors import LanternError
from .graph.builder import PageURL
from .metrics.base import MetricResult, NavigationMilestones
from .trace.trace_loader import load_main_thread_events, load_requests
from .trace.types import TraceParseError

logger = logging.getLogger("lantern")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="lantern-sim", description="Simulate page load metrics from a trace")
    parser.add_argument("--requests", required=True, help="Network request records (JSON, JSONL, optionally .gz)")
    parser.add_argument("--trace", help="Main-thread trace events (JSON, JSONL, optionally .gz)")
    parser.add_argument("--url", required=True, help="Requested URL of the navigation")
    parser.add_argument("--main-document-url", help="Final document URL after redirects (defaults to --url)")
    parser.add_argument("--config", help="YAML settings file")
    parser.add_argument("--time-origin", type=float, default=0.0, help="Navigation start (ms, trace clock)")
    parser.add_argument("--fcp", type=float, help="Observed first contentful paint (ms, trace clock)")
    parser.add_argument("--lcp", type=float, help="Observed largest contentful paint (ms, trace clock)")
    parser.add_argument("--metric", action="append", choices=METRIC_NAMES, help="Metric to estimate (repeatable)")
    parser.add_argument("--gather-mode", default="navigation", help="Gather mode of the recording")
    parser.add_argument("--lenient", action="store_true", help="Skip malformed records instead of failing")
    parser.add_argument("--metrics-json", help="Also write the metrics JSON to this path")
    parser.add_argument("--debug", action="store_true", help="Enable verbose DEBUG logging")
    return parser


def _result_to_dict(result: Any) -> Dict[str, Any]:
    if isinstance(result, LanternError):
        return {"error": result.to_dict()}
    assert isinstance(result, MetricResult)
    return {
        "timing": result.timing,
        "timestamp": result.timestamp,
        "optimistic": result.optimistic_estimate.time_in_ms,
        "pessimistic": result.pessimistic_estimate.time_in_ms,
    }


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        handlers=[logging.StreamHandler()],
    )
    if args.debug:
        logging.getLogger().setLevel(logging.DEBUG)
        logger.debug("DEBUG logging enabled via --debug flag")

    try:
        settings = load_settings(args.config) if args.config else Settings()
        strict = not args.lenient
        requests = load_requests(args.requests, strict=strict)
        events = load_main_thread_events(args.trace, strict=strict) if args.trace else []
    except (OSError, TraceParseError, LanternError) as exc:
        logger.error("Failed to load inputs: %s", exc)
        return 2

    data = MetricComputationInput(
        requests=requests,
        main_thread_events=events,
        url=PageURL(args.url, args.main_document_url or args.url),
        navigation=NavigationMilestones(
            time_origin=args.time_origin,
            first_contentful_paint=args.fcp,
            largest_contentful_paint=args.lcp,
        ),
        settings=settings,
        gather_mode=args.gather_mode,
    )
    cache = ArtifactCache()
    try:
        results = asyncio.run(
            compute_lantern_metrics(data, cache, metrics=args.metric or METRIC_NAMES, allow_unavailable=True)
        )
    except LanternError as exc:
        logger.error("%s [%s/%s]", exc, exc.kind.value, exc.code)
        return 1

    payload = {name: _result_to_dict(result) for name, result in results.items()}
    logger.debug("artifact cache: %d entries, %d hits, %d misses", len(cache), cache.hits, cache.misses)
    text = json.dumps(payload, indent=2, sort_keys=True)
    print(text)
    if args.metrics_json:
        with open(args.metrics_json, "w") as f:
            f.write(text + "\n")
    return 0


if __name__ == "__main__":
    sys.exit(main())

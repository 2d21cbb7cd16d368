"""Run records (summary JSON, JSONL run index, build history).

This package is intentionally independent of `ci_pipeline.app` (framework boundary).
"""

from .history import load_run_index, summarize_runs, summarize_stages
from .run_index import append_run_index_entry, build_run_index_entry, generate_run_id
from .summary import write_run_summary

__all__ = [
    "append_run_index_entry",
    "build_run_index_entry",
    "generate_run_id",
    "load_run_index",
    "summarize_runs",
    "summarize_stages",
    "write_run_summary",
]

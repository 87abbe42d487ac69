"""Reconciliation engine, HTTP fallback client and run orchestration."""

from thread_sync.sync.api import ThreadsApiClient
from thread_sync.sync.engine import SyncEngine
from thread_sync.sync.runs import RunOptions, RunOrchestrator, build_run_options

__all__ = ["ThreadsApiClient", "SyncEngine", "RunOptions", "RunOrchestrator", "build_run_options"]

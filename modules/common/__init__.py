from .utils import (
    load_settings,
    ensure_dir,
    load_json,
    save_json,
    atomic_write_text,
    append_jsonl,
    read_jsonl,
    ProgressLogger,
    PROGRESS_EVENT_SCHEMA,
    PROGRESS_STATUS_VALUES,
    validate_progress_event,
)
from .artifact_store import ArtifactStore
from .stage_runner import StageRunner
from .orchestrator import Orchestrator

__all__ = [
    "load_settings",
    "ensure_dir",
    "load_json",
    "save_json",
    "atomic_write_text",
    "append_jsonl",
    "read_jsonl",
    "ProgressLogger",
    "PROGRESS_EVENT_SCHEMA",
    "PROGRESS_STATUS_VALUES",
    "validate_progress_event",
    "ArtifactStore",
    "StageRunner",
    "Orchestrator",
]

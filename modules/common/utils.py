import json
import os
import tempfile
import yaml
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple
from pathlib import Path

# Progress event schema constants for lightweight validation/testing
PROGRESS_EVENT_SCHEMA: Dict[str, Tuple[type, ...]] = {
    "timestamp": (str,),
    "run_id": (str, type(None)),
    "entity": (str, type(None)),
    "stage": (str,),
    "status": (str,),
    "ordinal": (int, type(None)),
    "message": (str, type(None)),
    "artifact": (str, type(None)),
    "module_id": (str, type(None)),
    "error": (str, type(None)),
    "stage_description": (str, type(None)),
    "extra": (dict,),
}
# Note: `warning` is an event-level status used to surface non-fatal issues while a stage is still running.
# Pipeline state should still reflect the stage lifecycle (running/done/failed/skipped).
PROGRESS_STATUS_VALUES = {"running", "done", "failed", "skipped", "warning"}


def load_settings(path: str) -> Dict[str, Any]:
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f)
    return data or {}


def ensure_dir(path: str):
    os.makedirs(path, exist_ok=True)


def load_json(path: str) -> Any:
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def save_json(path: str, data: Any):
    """Save JSON file, ensuring parent directory exists."""
    Path(path).parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(data, f, ensure_ascii=False, indent=2)


def atomic_write_text(path: str, text: str):
    """
    Write text so readers only ever see the old file or the complete new one.
    The temp file lives in the destination directory so os.replace stays a rename.
    """
    directory = os.path.dirname(os.path.abspath(path))
    os.makedirs(directory, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(prefix=".tmp-", suffix=os.path.basename(path), dir=directory)
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)
        raise


def append_jsonl(path: str, row):
    Path(path).parent.mkdir(parents=True, exist_ok=True)
    with open(path, "a", encoding="utf-8") as f:
        f.write(json.dumps(row, ensure_ascii=False) + "\n")


def read_jsonl(path: str):
    with open(path, "r", encoding="utf-8") as f:
        for line in f:
            if line.strip():
                yield json.loads(line)


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _type_ok(val: Any, allowed: Tuple[type, ...]) -> bool:
    if val is None:
        return type(None) in allowed
    for typ in allowed:
        if typ is int and isinstance(val, int) and not isinstance(val, bool):
            return True
        if isinstance(val, typ):
            return True
    return False


def validate_progress_event(event: Dict[str, Any]):
    """Lightweight runtime guard to keep progress events well-shaped."""
    missing = [k for k in PROGRESS_EVENT_SCHEMA if k not in event]
    if missing:
        raise ValueError(f"Missing progress event fields: {missing}")
    if event.get("status") not in PROGRESS_STATUS_VALUES:
        raise ValueError(f"Invalid progress status: {event.get('status')}")
    for key, allowed in PROGRESS_EVENT_SCHEMA.items():
        if not _type_ok(event.get(key), allowed):
            expected = ", ".join([t.__name__ if t is not type(None) else "None" for t in allowed])
            raise ValueError(f"Field '{key}' expected types [{expected}], got {type(event.get(key)).__name__}")


class ProgressLogger:
    """
    Lightweight progress/state emitter.
    - Appends JSONL events to progress_path (append-only).
    - Updates pipeline_state.json with the latest status per stage.
    Either path may be None, in which case that half is a no-op.
    """

    def __init__(self, state_path: Optional[str] = None, progress_path: Optional[str] = None,
                 run_id: Optional[str] = None, entity: Optional[str] = None):
        self.state_path = state_path
        self.progress_path = progress_path
        self.run_id = run_id
        self.entity = entity
        if progress_path:
            Path(progress_path).parent.mkdir(parents=True, exist_ok=True)
        if state_path:
            Path(state_path).parent.mkdir(parents=True, exist_ok=True)

    def log(self, stage: str, status: str, ordinal: Optional[int] = None, message: Optional[str] = None,
            artifact: Optional[str] = None, module_id: Optional[str] = None, error: Optional[str] = None,
            stage_description: Optional[str] = None, extra: Optional[Dict[str, Any]] = None):
        now = utc_now()
        event = {
            "timestamp": now,
            "run_id": self.run_id,
            "entity": self.entity,
            "stage": stage,
            "status": status,
            "ordinal": ordinal,
            "message": message,
            "artifact": artifact,
            "module_id": module_id,
            "error": error,
            "stage_description": stage_description,
            "extra": extra or {},
        }

        validate_progress_event(event)

        if self.progress_path:
            append_jsonl(self.progress_path, event)

        if self.state_path:
            state = {}
            if os.path.exists(self.state_path):
                try:
                    state = load_json(self.state_path)
                except (OSError, ValueError):
                    state = {}
            stages = state.get("stages", {})
            if self.run_id:
                state["run_id"] = self.run_id
            if self.entity:
                state["entity"] = self.entity
            stage_state = stages.get(stage, {})
            # Warnings are recorded via events, but should not overwrite the stage lifecycle.
            state_status = status
            if status == "warning":
                prev = stage_state.get("status")
                state_status = prev if prev in {"done", "failed", "skipped"} else "running"
            stage_state.update({
                "status": state_status,
                "ordinal": ordinal if ordinal is not None else stage_state.get("ordinal"),
                "artifact": artifact or stage_state.get("artifact"),
                "updated_at": now,
                "module_id": module_id or stage_state.get("module_id"),
                "description": stage_description or stage_state.get("description"),
                "error": error,
                "message": message,
            })
            stages[stage] = stage_state
            state["stages"] = stages
            atomic_write_text(self.state_path, json.dumps(state, indent=2))

        return event


def log_llm_usage(model: str, prompt_tokens: int, completion_tokens: int, *,
                  provider: str = "openai", request_ms: float = None, request_id: str = None,
                  stage_id: str = None, run_id: str = None, sink_env: str = "INSTRUMENT_SINK"):
    """
    Append a lightweight LLM usage event to the instrumentation sink if enabled.
    No-op when sink env var is unset.
    """
    sink = os.getenv(sink_env)
    if not sink:
        return None
    if prompt_tokens is None or completion_tokens is None:
        raise ValueError("prompt_tokens and completion_tokens are required")
    event = {
        "schema_version": "agent_call_v1",
        "model": model,
        "provider": provider,
        "prompt_tokens": int(prompt_tokens),
        "completion_tokens": int(completion_tokens),
        "request_ms": request_ms,
        "request_id": request_id,
        "stage_id": stage_id or os.getenv("INSTRUMENT_STAGE"),
        "run_id": run_id or os.getenv("RUN_ID"),
        "created_at": utc_now(),
    }
    append_jsonl(sink, event)
    return event

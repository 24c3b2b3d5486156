import argparse
import json
import os
from typing import Dict, List, Optional, Type

from pydantic import BaseModel, ValidationError

from modules.common.utils import load_json, read_jsonl, validate_progress_event
from schemas import ARTIFACT_FORMATS, AgentCallUsage, PipelineState

STATE_FILE = "pipeline_state.json"
EVENTS_FILE = "pipeline_events.jsonl"

SCHEMA_MAP: Dict[str, Type[BaseModel]] = {
    "pipeline_state_v1": PipelineState,
    "agent_call_v1": AgentCallUsage,
}


def check_artifact_text(name: str, text: str) -> Optional[str]:
    """Return a problem description, or None when the artifact is usable by later stages."""
    fmt = ARTIFACT_FORMATS.get(os.path.splitext(name)[1].lower())
    if fmt is None:
        return f"{name}: unknown artifact type"
    if not text.strip():
        return f"{name}: empty"
    if fmt == "json":
        try:
            data = json.loads(text)
        except ValueError as e:
            return f"{name}: invalid JSON ({e})"
        if not isinstance(data, (dict, list)):
            return f"{name}: expected a JSON object or array, got {type(data).__name__}"
    return None


def validate_entity_dir(entity_dir: str) -> List[str]:
    """Check every artifact of one entity plus its state and event files."""
    errors: List[str] = []
    if not os.path.isdir(entity_dir):
        return [f"{entity_dir}: no such entity directory"]
    for name in sorted(os.listdir(entity_dir)):
        path = os.path.join(entity_dir, name)
        if name == STATE_FILE or not os.path.isfile(path):
            continue
        if os.path.splitext(name)[1].lower() not in ARTIFACT_FORMATS:
            continue
        with open(path, "r", encoding="utf-8") as f:
            problem = check_artifact_text(name, f.read())
        if problem:
            errors.append(problem)

    state_path = os.path.join(entity_dir, STATE_FILE)
    if os.path.exists(state_path):
        try:
            state = PipelineState(**load_json(state_path))
        except (ValueError, ValidationError) as e:
            errors.append(f"{STATE_FILE}: {e}")
        else:
            for stage, st in state.stages.items():
                if st.status == "done" and st.artifact and not os.path.exists(st.artifact):
                    errors.append(f"{STATE_FILE}: stage {stage} is done but {st.artifact} is missing")

    events_path = os.path.join(entity_dir, EVENTS_FILE)
    if os.path.exists(events_path):
        for idx, row in enumerate(read_jsonl(events_path), start=1):
            try:
                validate_progress_event(row)
            except ValueError as e:
                errors.append(f"{EVENTS_FILE} row {idx}: {e}")
    return errors


def validate_rows(schema: str, path: str) -> List[str]:
    model_cls = SCHEMA_MAP[schema]
    if path.endswith(".jsonl"):
        rows = list(read_jsonl(path))
    else:
        rows = [load_json(path)]
    errors = []
    for idx, row in enumerate(rows, start=1):
        try:
            model_cls(**row)
        except ValidationError as e:
            errors.append(f"row {idx}: {e}")
    return errors


def main(argv=None):
    parser = argparse.ArgumentParser(description="Validate conversion artifacts.")
    parser.add_argument("--entity", help="Check every artifact under <output>/<entity>/")
    parser.add_argument("--output", default="output", help="Output root (default: output)")
    parser.add_argument("--schema", choices=SCHEMA_MAP.keys(), help="Validate --file against a record schema")
    parser.add_argument("--file", help="JSON or JSONL file for --schema")
    args = parser.parse_args(argv)

    if args.schema:
        if not args.file:
            parser.error("--schema needs --file")
        errors = validate_rows(args.schema, args.file)
        target = args.file
    elif args.entity:
        errors = validate_entity_dir(os.path.join(args.output, args.entity))
        target = args.entity
    else:
        parser.error("one of --entity or --schema/--file is required")

    for err in errors:
        print(f"[ERROR] {err}")
    if errors:
        print(f"Validation finished with {len(errors)} errors for {target}.")
        raise SystemExit(1)
    print(f"Validation OK: {target}")


if __name__ == "__main__":
    main()

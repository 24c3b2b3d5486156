"""
Shared command line for running one stage on its own.

Every stage module's main() hands its module_id to run_stage(). The stage is
taken from the default recipe so a standalone run reads the same inputs and
writes the same artifact as the full pipeline would.
"""
import argparse
import os
import sys
from typing import List, Optional, Tuple

from modules.common.artifact_store import ArtifactStore
from modules.common.config import build_run_config, read_settings
from modules.common.errors import (EXIT_INTERRUPTED, EXIT_INVALID_INVOCATION, EXIT_IO_FAILURE, EXIT_OK,
                                   EXIT_STAGE_FAILURES, ArtifactIOError, InvalidInvocation)
from modules.common.executors import make_executor
from modules.common.orchestrator import entity_lock
from modules.common.paths import FORM_TYPES, resolve_form_name
from modules.common.recipe import apply_form_name, build_plan, default_recipe_path, load_recipe, load_registry
from modules.common.stage_runner import StageRunner
from modules.common.utils import ProgressLogger
from schemas import ENTITY_PATTERN, StageDescriptor


def resolve_entity(entity: Optional[str], form_name: Optional[str]) -> Tuple[str, bool]:
    """Returns (entity, single_form). --form-name wins when it names the entity too."""
    single_form = False
    if form_name:
        try:
            parsed, single_form = resolve_form_name(form_name)
        except ValueError as e:
            raise InvalidInvocation(str(e)) from None
        if entity and entity != parsed:
            raise InvalidInvocation(f"--entity {entity} does not match --form-name {form_name} (entity {parsed})")
        entity = parsed
    if not entity:
        raise InvalidInvocation("one of --entity or --form-name is required")
    if not ENTITY_PATTERN.match(entity):
        raise InvalidInvocation(f"invalid entity name {entity!r}")
    return entity, single_form


def build_parser(description: str, form_options: bool = False) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=description)
    parser.add_argument("--entity", help="Entity name (e.g. Facility)")
    if form_options:
        parser.add_argument("--form-type", choices=FORM_TYPES, help="Which form of the entity to analyze")
        parser.add_argument("--form-name", help="Form name, e.g. frmFacilitySearch or frmFuelPrices")
    parser.add_argument("--interactive", action="store_true", help="Let the agent session run interactively")
    parser.add_argument("--output", help="Output root; artifacts go to <output>/<Entity>/")
    parser.add_argument("--settings", help="Settings yaml")
    parser.add_argument("--mock", action="store_true", help="Use the mock executor instead of calling an agent")
    parser.add_argument("--run-id", help="Run identifier for the event log")
    parser.add_argument("--no-lock", action="store_true", help="Do not take the per-entity run lock")
    return parser


def select_stage(stages: List[StageDescriptor], module_id: str, form_type: Optional[str] = None) -> StageDescriptor:
    candidates = [s for s in stages if s.module_id == module_id]
    if form_type:
        candidates = [s for s in candidates if s.params.get("form_type") == form_type]
    if not candidates:
        detail = f" with form_type {form_type}" if form_type else ""
        raise InvalidInvocation(f"no stage for module {module_id}{detail} in the default recipe")
    if len(candidates) > 1:
        names = ", ".join(s.name for s in candidates)
        raise InvalidInvocation(f"module {module_id} runs as several stages ({names}); pick one with --form-type")
    return candidates[0]


def _run(module_id: str, args) -> int:
    config = build_run_config(read_settings(args.settings), output_override=args.output)
    form_name = getattr(args, "form_name", None)
    entity, single_form = resolve_entity(args.entity, form_name)

    registry = load_registry()["modules"]
    recipe = load_recipe(default_recipe_path(single_form))
    if single_form:
        apply_form_name(recipe, registry, form_name)
    stages = build_plan(recipe, registry)
    form_type = getattr(args, "form_type", None)
    if form_name and not single_form and not form_type:
        form_type = "Search" if form_name.lower().endswith("search") else "Detail"
    descriptor = select_stage(stages, module_id, form_type)

    store = ArtifactStore.for_stages(config.output_root, stages, tasks_dir=config.tasks_dir)
    entity_dir = store.entity_dir(entity)
    run_id = args.run_id or f"{entity.lower()}-{descriptor.name}"
    with entity_lock(entity_dir, enabled=not args.no_lock):
        logger = ProgressLogger(
            state_path=os.path.join(entity_dir, "pipeline_state.json"),
            progress_path=os.path.join(entity_dir, "pipeline_events.jsonl"),
            run_id=run_id,
            entity=entity,
        )
        runner = StageRunner(store, make_executor(config, store, run_id=run_id, mock=args.mock), config,
                             logger=logger)
        outcome = runner.run(descriptor, entity, interactive=True if args.interactive else None)
    print(f"{descriptor.name}: {outcome.label()}")
    return EXIT_OK if outcome.status == "succeeded" else EXIT_STAGE_FAILURES


def run_stage(module_id: str, description: str, argv: Optional[List[str]] = None,
              form_options: bool = False) -> int:
    args = build_parser(description, form_options=form_options).parse_args(argv)
    try:
        return _run(module_id, args)
    except InvalidInvocation as e:
        print(f"[error] {e}", file=sys.stderr)
        return EXIT_INVALID_INVOCATION
    except (ArtifactIOError, OSError) as e:
        print(f"[error] storage failure: {e}", file=sys.stderr)
        return EXIT_IO_FAILURE
    except KeyboardInterrupt:
        print("[interrupted]", file=sys.stderr)
        return EXIT_INTERRUPTED

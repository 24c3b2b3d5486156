import argparse
import json
import os
import shlex
import sys
from typing import List, Optional, Set, Tuple

from modules.common.artifact_store import ArtifactStore
from modules.common.config import build_run_config, read_settings
from modules.common.errors import (EXIT_INTERRUPTED, EXIT_INVALID_INVOCATION, EXIT_IO_FAILURE, EXIT_OK,
                                   EXIT_STAGE_FAILURES, ArtifactIOError, InvalidInvocation, RunInterrupted)
from modules.common.executors import make_executor
from modules.common.orchestrator import Orchestrator, completed_stages, entity_lock, resolve_skip_steps
from modules.common.paths import available_forms, entity_is_known
from modules.common.recipe import (DEFAULT_REGISTRY, apply_form_name, build_plan, default_recipe_path,
                                   load_recipe, load_registry)
from modules.common.stage_cli import resolve_entity
from modules.common.stage_runner import StageRunner
from modules.common.utils import ProgressLogger
from schemas import RunConfig, RunReport, StageDescriptor


def _default_run_id(base: str = "run") -> str:
    """
    Generate a timestamped run_id so event logs of separate runs can be told apart.
    Format: <base>-YYYYMMDD-HHMMSS-<6hex>
    """
    import uuid
    from datetime import datetime
    ts = datetime.now().strftime("%Y%m%d-%H%M%S")
    rand = uuid.uuid4().hex[:6]
    return f"{base}-{ts}-{rand}"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Run the legacy form conversion analysis for one entity, stage by stage.")
    parser.add_argument("--entity", help="Entity name (e.g. Facility, Barge)")
    parser.add_argument("--form-name", help="Form name, e.g. frmFacilitySearch; frm<Name> selects single-form mode")
    parser.add_argument("--skip-steps", default="",
                        help="Comma-separated step numbers or stage names to skip (e.g. 1,2,business-logic)")
    parser.add_argument("--skip-done", action="store_true", help="Skip stages whose artifact already exists")
    parser.add_argument("--output", help="Output root; artifacts go to <output>/<Entity>/")
    parser.add_argument("--recipe", help="Recipe yaml (defaults to the search/detail or single-form recipe)")
    parser.add_argument("--registry", default=DEFAULT_REGISTRY, help="Module registry directory or yaml")
    parser.add_argument("--settings", help="Settings yaml (defaults to ./settings.yaml when present)")
    parser.add_argument("--mock", action="store_true", help="Use the mock executor instead of calling an agent")
    parser.add_argument("--no-interactive", action="store_true",
                        help="Run every stage unattended, including stages that default to interactive")
    parser.add_argument("--dry-run", action="store_true", help="Print the resolved plan and skip set, then exit")
    parser.add_argument("--dump-plan", action="store_true", help="Print the resolved plan as JSON and exit")
    parser.add_argument("--run-id", help="Explicit run id (default: <entity>-<timestamp>-<hex>)")
    parser.add_argument("--no-lock", action="store_true", help="Do not take the per-entity run lock")
    parser.add_argument("--list-forms", action="store_true", help="List legacy forms found in the source tree and exit")
    return parser


def plan_for(args, single_form: bool) -> Tuple[str, List[StageDescriptor]]:
    recipe_path = args.recipe or default_recipe_path(single_form)
    registry = load_registry(args.registry)["modules"]
    recipe = load_recipe(recipe_path)
    if single_form:
        apply_form_name(recipe, registry, args.form_name)
    return recipe_path, build_plan(recipe, registry)


def print_dry_run(entity: str, stages: List[StageDescriptor], skip: Set[str], store: ArtifactStore):
    print(f"[dry-run] {entity}: {len(stages)} stages, output {store.entity_dir(entity)}")
    for stage in stages:
        tag = "skip" if stage.name in skip else "plan"
        needs = f" needs {','.join(stage.needs)}" if stage.needs else ""
        mode = " [interactive]" if stage.interactive else ""
        print(f"[{tag}] {stage.ordinal:02d} {stage.name} -> {stage.artifact}{needs}{mode}")


def resume_args(args, entity: str, single_form: bool) -> List[str]:
    """Arguments that re-select the same recipe, output and settings on the next run."""
    target = ["--form-name", args.form_name] if single_form else ["--entity", entity]
    registry = args.registry if args.registry != DEFAULT_REGISTRY else None
    for flag, value in (("--output", args.output), ("--settings", args.settings), ("--recipe", args.recipe),
                        ("--registry", registry)):
        if value:
            target += [flag, value]
    return target


def resume_hint(report: RunReport, target_args: Optional[List[str]] = None) -> Optional[str]:
    done = [str(o.ordinal) for o in report.outcomes if o.status in ("succeeded", "skipped")]
    if not done or report.ok:
        return None
    target = target_args or ["--entity", report.entity]
    cmd = ["python", "driver.py", *target, "--skip-steps", ",".join(done)]
    return f"To resume: {' '.join(shlex.quote(part) for part in cmd)}"


def print_report(report: RunReport, target_args: List[str]):
    print()
    print(report.render())
    hint = resume_hint(report, target_args)
    if hint:
        print(hint)


def run_pipeline(config: RunConfig, entity: str, stages: List[StageDescriptor], skip: Set[str], run_id: str,
                 mock: bool = False, interactive: Optional[bool] = None, lock: bool = True) -> RunReport:
    store = ArtifactStore.for_stages(config.output_root, stages, tasks_dir=config.tasks_dir)
    entity_dir = store.entity_dir(entity)
    with entity_lock(entity_dir, enabled=lock):
        logger = ProgressLogger(
            state_path=os.path.join(entity_dir, "pipeline_state.json"),
            progress_path=os.path.join(entity_dir, "pipeline_events.jsonl"),
            run_id=run_id,
            entity=entity,
        )
        executor = make_executor(config, store, run_id=run_id, mock=mock)
        runner = StageRunner(store, executor, config, logger=logger)
        return Orchestrator(runner, logger=logger, run_id=run_id).execute(entity, skip, stages,
                                                                         interactive=interactive)


def run(args) -> int:
    config = build_run_config(read_settings(args.settings), output_override=args.output)

    if args.list_forms:
        forms = available_forms(config.source)
        if not forms:
            print("[warn] no legacy forms found (is source.input_directory set?)")
        for name in forms:
            print(name)
        return EXIT_OK

    entity, single_form = resolve_entity(args.entity, args.form_name)
    if entity_is_known(config.source, entity) is False:
        raise InvalidInvocation(f"unknown entity {entity}: no frm{entity}* form in {config.source.forms}")

    recipe_path, stages = plan_for(args, single_form)
    if args.dump_plan:
        print(json.dumps([s.model_dump(exclude={"system_prompt"}) for s in stages], indent=2))
        return EXIT_OK

    tokens = [t for t in args.skip_steps.split(",") if t.strip()]
    skip = resolve_skip_steps(tokens, stages)
    store = ArtifactStore.for_stages(config.output_root, stages, tasks_dir=config.tasks_dir)
    if args.skip_done:
        done = completed_stages(store, entity, stages)
        if done:
            print(f"[skip-done] existing artifacts for: {', '.join(s.name for s in stages if s.name in done)}")
        skip |= done

    if args.dry_run:
        print_dry_run(entity, stages, skip, store)
        return EXIT_OK

    run_id = args.run_id or _default_run_id(entity.lower())
    mode = "single-form" if single_form else "search/detail"
    print(f"[start] {entity} ({mode}) run {run_id}: {len(stages)} stages from {os.path.basename(recipe_path)}")
    target_args = resume_args(args, entity, single_form)
    try:
        report = run_pipeline(config, entity, stages, skip, run_id, mock=args.mock,
                              interactive=False if args.no_interactive else None, lock=not args.no_lock)
    except RunInterrupted as e:
        print_report(e.report, target_args)
        raise

    print_report(report, target_args)
    return EXIT_OK if report.ok else EXIT_STAGE_FAILURES


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        return run(args)
    except InvalidInvocation as e:
        print(f"[error] {e}", file=sys.stderr)
        return EXIT_INVALID_INVOCATION
    except (ArtifactIOError, OSError) as e:
        print(f"[error] storage failure, run aborted: {e}", file=sys.stderr)
        return EXIT_IO_FAILURE
    except KeyboardInterrupt:
        print("[interrupted] run stopped; committed artifacts are kept", file=sys.stderr)
        return EXIT_INTERRUPTED


if __name__ == "__main__":
    sys.exit(main())

"""
Copy agent side files from .claude/tasks into missing canonical artifacts.

Agents sometimes write <Entity>_<stage>.json under .claude/tasks instead of the
output path they were given. This fills the gaps; existing artifacts are never
overwritten.
"""
import argparse
import os
from typing import Dict, List, Optional

from tqdm import tqdm

from modules.common.artifact_store import ArtifactStore
from modules.common.config import build_run_config, read_settings
from modules.common.errors import GenerationFailure
from modules.common.recipe import build_plan, default_recipe_path, load_recipe, load_registry
from modules.common.stage_runner import check_artifact_content
from schemas import ENTITY_PATTERN, StageDescriptor


def sync_entity(store: ArtifactStore, entity: str, stages: List[StageDescriptor],
                dry_run: bool = False) -> Dict[str, str]:
    """Returns {stage: action} for every stage that had a side file but no artifact."""
    actions: Dict[str, str] = {}
    for stage in stages:
        if store.exists(entity, stage.name):
            continue
        text = store.read_task_file(entity, stage.name)
        if text is None:
            continue
        try:
            check_artifact_content(stage, text)
        except GenerationFailure as e:
            actions[stage.name] = f"rejected: {e}"
            continue
        if dry_run:
            actions[stage.name] = "would copy"
        else:
            store.write(entity, stage.name, text)
            actions[stage.name] = "copied"
    return actions


def entities_with_task_files(tasks_dir: str) -> List[str]:
    if not os.path.isdir(tasks_dir):
        return []
    found = set()
    for name in os.listdir(tasks_dir):
        if name.endswith(".json") and "_" in name:
            found.add(name.split("_", 1)[0])
    return sorted(e for e in found if ENTITY_PATTERN.match(e))


def main(argv: Optional[List[str]] = None):
    parser = argparse.ArgumentParser(description="Fill missing artifacts from .claude/tasks side files.")
    parser.add_argument("--entity", help="Only this entity (default: every entity with side files)")
    parser.add_argument("--output", help="Output root")
    parser.add_argument("--settings", help="Settings yaml")
    parser.add_argument("--single-form", action="store_true", help="Use single-form artifact names")
    parser.add_argument("--dry-run", action="store_true", help="Report what would be copied")
    args = parser.parse_args(argv)

    config = build_run_config(read_settings(args.settings), output_override=args.output)
    stages = build_plan(load_recipe(default_recipe_path(args.single_form)), load_registry()["modules"])
    store = ArtifactStore.for_stages(config.output_root, stages, tasks_dir=config.tasks_dir)

    entities = [args.entity] if args.entity else entities_with_task_files(config.tasks_dir)
    total = 0
    for entity in tqdm(entities, desc="Sync task files"):
        for stage, action in sync_entity(store, entity, stages, dry_run=args.dry_run).items():
            total += action in ("copied", "would copy")
            print(f"[sync] {entity} {stage}: {action}")
    print(f"{total} artifacts {'to copy' if args.dry_run else 'copied'} from {config.tasks_dir}")


if __name__ == "__main__":
    main()

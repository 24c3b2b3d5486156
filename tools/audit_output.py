"""
Audit every entity folder under the output root:
- stages whose latest state is failed or still running
- artifacts recorded in pipeline_state.json that are missing on disk
- analysis artifacts the conversion-plan stage needs that are not there yet

Writes <output>/_audit-output.json and prints a summary.
"""
import argparse
import os
from typing import Any, Dict, List

from tqdm import tqdm

from modules.common.recipe import build_plan, default_recipe_path, load_recipe, load_registry
from modules.common.utils import load_json, save_json, utc_now
from schemas import ENTITY_PATTERN, StageDescriptor

STATE_FILE = "pipeline_state.json"
REPORT_FILE = "_audit-output.json"
TEMPLATE_MODULE = "conversion_templates_v1"


def template_inputs(stages: List[StageDescriptor]) -> List[str]:
    """Artifact file names the template generation stage reads."""
    by_name = {s.name: s for s in stages}
    for stage in stages:
        if stage.module_id == TEMPLATE_MODULE:
            return [by_name[n].artifact for n in stage.needs]
    return []


def infer_mode(entity_dir: str) -> str:
    if os.path.exists(os.path.join(entity_dir, "form-structure.json")):
        return "single-form"
    return "search-detail"


def audit_entity(entity_dir: str, required_by_mode: Dict[str, List[str]]) -> Dict[str, Any]:
    entity = os.path.basename(entity_dir)
    mode = infer_mode(entity_dir)
    result: Dict[str, Any] = {
        "folder": entity,
        "mode": mode,
        "has_templates_folder": os.path.isdir(os.path.join(entity_dir, "templates")),
        "problem_stages": [],
        "missing_stage_outputs": [],
        "missing_for_template_gen": [],
    }

    state_path = os.path.join(entity_dir, STATE_FILE)
    if os.path.exists(state_path):
        try:
            state = load_json(state_path)
        except ValueError as e:
            result["state_error"] = f"unreadable {STATE_FILE}: {e}"
            state = {}
        stages = state.get("stages") or {}
        for name, st in sorted(stages.items(), key=lambda kv: kv[1].get("ordinal") or 0):
            status = st.get("status")
            if status in ("failed", "running"):
                result["problem_stages"].append({"stage": name, "status": status, "error": st.get("error"),
                                                 "message": st.get("message")})
            artifact = st.get("artifact")
            if status == "done" and artifact and not os.path.exists(artifact):
                result["missing_stage_outputs"].append({"stage": name, "artifact": artifact})

    for fname in required_by_mode[mode]:
        if not os.path.exists(os.path.join(entity_dir, fname)):
            result["missing_for_template_gen"].append(fname)
    return result


def needs_attention(entry: Dict[str, Any]) -> bool:
    return bool(entry["problem_stages"] or entry["missing_stage_outputs"] or entry["missing_for_template_gen"]
                or entry.get("state_error"))


def audit_output(output_root: str) -> Dict[str, Any]:
    registry = load_registry()["modules"]
    required_by_mode = {
        "search-detail": template_inputs(build_plan(load_recipe(default_recipe_path(False)), registry)),
        "single-form": template_inputs(build_plan(load_recipe(default_recipe_path(True)), registry)),
    }
    folders = sorted(
        name for name in os.listdir(output_root)
        if os.path.isdir(os.path.join(output_root, name)) and ENTITY_PATTERN.match(name)
    )
    entities = [audit_entity(os.path.join(output_root, name), required_by_mode)
                for name in tqdm(folders, desc="Audit entities")]
    return {
        "generated_at": utc_now(),
        "output_root": os.path.abspath(output_root),
        "entities_total": len(entities),
        "entities_needing_attention": sum(1 for e in entities if needs_attention(e)),
        "entities": entities,
    }


def main(argv=None):
    parser = argparse.ArgumentParser(description="Audit conversion outputs for failed stages and missing files.")
    parser.add_argument("--output", default="output", help="Output root (default: output)")
    parser.add_argument("--report", help=f"Report path (default: <output>/{REPORT_FILE})")
    args = parser.parse_args(argv)

    if not os.path.isdir(args.output):
        raise SystemExit(f"Output root not found: {args.output}")
    report = audit_output(args.output)
    report_path = args.report or os.path.join(args.output, REPORT_FILE)
    save_json(report_path, report)

    for entry in report["entities"]:
        if not needs_attention(entry):
            continue
        print(f"[audit] {entry['folder']} ({entry['mode']})")
        for p in entry["problem_stages"]:
            print(f"  {p['status']}: {p['stage']}" + (f" ({p['error']})" if p.get("error") else ""))
        for m in entry["missing_stage_outputs"]:
            print(f"  missing output: {m['artifact']}")
        if entry["missing_for_template_gen"]:
            print(f"  missing for template generation: {', '.join(entry['missing_for_template_gen'])}")
    print(f"{report['entities_needing_attention']}/{report['entities_total']} entities need attention -> {report_path}")


if __name__ == "__main__":
    main()

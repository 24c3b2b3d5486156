from typing import Any, Dict

from modules.common.paths import form_designer_path, form_designer_path_by_name, input_artifacts_for_prompt
from modules.common.stage_cli import run_stage
from schemas import SourceLayout

MODULE_ID = "detail_tabs_v1"


def build_prompt(entity: str, params: Dict[str, Any], layout: SourceLayout, output_path: str,
                 input_paths: Dict[str, str]) -> str:
    form = params.get("form_name")
    designer = form_designer_path_by_name(layout, form) if form else form_designer_path(layout, entity, "Detail")
    return f"""TASK: Extract the tab structure of the detail form for {entity}.

TARGET FILES:
- Designer: {designer}

INPUT ARTIFACTS:
{input_artifacts_for_prompt(input_paths)}

ANALYSIS GOALS:
1. List every tab page in display order with its caption
2. Assign each control to the tab that contains it
3. Identify tabs that show related-entity grids
4. Note tabs that are hidden or disabled by state or permission

If the form has no tab control, write {{"tabs": []}}.

OUTPUT:
Generate a JSON file at: {output_path}

Begin analysis.
"""


def main():
    raise SystemExit(run_stage(MODULE_ID, "Extract the tab layout of an entity's detail form."))


if __name__ == "__main__":
    main()

from typing import Any, Dict

from modules.common.paths import (form_designer_path, form_designer_path_by_name, form_path, form_path_by_name,
                                  reference_projects_for_prompt)
from modules.common.stage_cli import run_stage
from schemas import SourceLayout

MODULE_ID = "form_structure_v1"


def build_prompt(entity: str, params: Dict[str, Any], layout: SourceLayout, output_path: str,
                 input_paths: Dict[str, str]) -> str:
    form_name = params.get("form_name")
    form_type = params.get("form_type")
    if form_name:
        label = form_name
        target = form_path_by_name(layout, form_name)
        designer = form_designer_path_by_name(layout, form_name)
    elif form_type:
        label = f"frm{entity}{form_type}"
        target = form_path(layout, entity, form_type)
        designer = form_designer_path(layout, entity, form_type)
    else:
        raise ValueError("form structure analysis needs form_type or form_name")

    return f"""TASK: Extract complete form structure from legacy VB.NET Windows Forms for {label}.

TARGET FILES:
- Form: {target}
- Designer: {designer}

OUTPUT:
Generate a JSON file at: {output_path}

ARCHITECTURE REFERENCES:
{reference_projects_for_prompt(layout)}

Begin analysis now.
"""


def main():
    raise SystemExit(run_stage(MODULE_ID, "Extract controls, layout and grids of one legacy form.",
                               form_options=True))


if __name__ == "__main__":
    main()

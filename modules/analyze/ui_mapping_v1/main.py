from typing import Any, Dict

from modules.common.paths import input_artifacts_for_prompt, reference_projects_for_prompt
from modules.common.stage_cli import run_stage
from schemas import SourceLayout

MODULE_ID = "ui_mapping_v1"

# Legacy Infragistics control -> modern widget, as used in the reference UI projects.
CONTROL_MAP = {
    "UltraGrid": "DataTables",
    "UltraCombo": "Select2",
    "UltraPanel": "Bootstrap Card",
    "UltraTabControl": "Bootstrap Nav Tabs",
}


def build_prompt(entity: str, params: Dict[str, Any], layout: SourceLayout, output_path: str,
                 input_paths: Dict[str, str]) -> str:
    goals = "\n".join(f"{i}. Map {legacy} to {modern}"
                      for i, (legacy, modern) in enumerate(CONTROL_MAP.items(), start=1))
    return f"""TASK: Map legacy controls to modern equivalents for {entity}.

INPUT ARTIFACTS (form structure already extracted):
{input_artifacts_for_prompt(input_paths)}

GOALS:
{goals}
{len(CONTROL_MAP) + 1}. Follow the patterns of the reference UI projects

REFERENCE PROJECTS:
{reference_projects_for_prompt(layout)}

OUTPUT:
Generate a JSON file at: {output_path}

Begin mapping.
"""


def main():
    raise SystemExit(run_stage(MODULE_ID, "Map legacy WinForms controls to modern web components."))


if __name__ == "__main__":
    main()

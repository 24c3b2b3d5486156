from typing import Any, Dict

from modules.common.paths import input_artifacts_for_prompt
from modules.common.stage_cli import run_stage
from schemas import SourceLayout

MODULE_ID = "form_workflow_v1"


def build_prompt(entity: str, params: Dict[str, Any], layout: SourceLayout, output_path: str,
                 input_paths: Dict[str, str]) -> str:
    return f"""TASK: Extract user flows and state management for {entity}.

INPUT ARTIFACTS:
{input_artifacts_for_prompt(input_paths)}

ANALYSIS GOALS:
1. Trace event handler chains
2. Identify form lifecycle methods
3. Extract state persistence patterns
4. Identify modal dialog patterns
5. Extract refresh/update triggers

OUTPUT:
Generate a JSON file at: {output_path}

Begin analysis.
"""


def main():
    raise SystemExit(run_stage(MODULE_ID, "Extract user flows and state management of an entity's forms."))


if __name__ == "__main__":
    main()

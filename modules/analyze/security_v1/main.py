from typing import Any, Dict

from modules.common.paths import form_path, form_path_by_name
from modules.common.stage_cli import run_stage
from schemas import SourceLayout

MODULE_ID = "security_v1"


def build_prompt(entity: str, params: Dict[str, Any], layout: SourceLayout, output_path: str,
                 input_paths: Dict[str, str]) -> str:
    form = params.get("form_name")
    if form:
        targets = [form_path_by_name(layout, form)]
    else:
        targets = [form_path(layout, entity, "Search"), form_path(layout, entity, "Detail")]
    target_lines = "\n".join(f"- {t}" for t in targets)
    return f"""TASK: Extract security patterns for {entity}.

TARGET FILES:
{target_lines}

EXTRACTION GOALS:
1. Extract SubSystem identifier from InitializeBase
2. Parse SetButtonTypes for button security
3. Extract ControlAuthorization.SetButtonType calls
4. Identify permission requirements
5. Map button types to modern permission attributes
6. Document API authentication (ApiKey) and UI authentication (OIDC)

OUTPUT:
Generate a JSON file at: {output_path}

Begin extraction.
"""


def main():
    raise SystemExit(run_stage(MODULE_ID, "Extract permissions and authorization rules of an entity's forms."))


if __name__ == "__main__":
    main()

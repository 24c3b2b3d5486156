"""
Conversion plan generation.

Runs after every analysis stage. The agent session is interactive by default so
the operator can ask for extra templates (view models, partials) before the plan
is written.
"""
import os
from typing import Any, Dict

from modules.common.paths import input_artifacts_for_prompt, reference_projects_for_prompt
from modules.common.stage_cli import run_stage
from schemas import SourceLayout

MODULE_ID = "conversion_templates_v1"

TEMPLATE_LAYOUT = """templates/
  shared/Dto/        {Entity}Dto.cs, {Entity}SearchRequest.cs, {Child}Dto.cs
  api/Controllers/   {Entity}Controller.cs
  api/Repositories/  I{Entity}Repository.cs, {Entity}Repository.cs
  api/Services/      I{Entity}Service.cs, {Entity}Service.cs
  ui/Controllers/    {Entity}SearchController.cs
  ui/Services/       I{Entity}Service.cs, {Entity}Service.cs
  ui/ViewModels/     {Entity}SearchViewModel.cs, {Entity}EditViewModel.cs
  ui/Views/{Entity}/ Index.cshtml, Edit.cshtml
  ui/wwwroot/js/     {entity}-search.js, {entity}-detail.js"""


def build_prompt(entity: str, params: Dict[str, Any], layout: SourceLayout, output_path: str,
                 input_paths: Dict[str, str]) -> str:
    templates_dir = os.path.join(os.path.dirname(os.path.dirname(output_path)), "templates")
    return f"""TASK: Generate the complete conversion plan and code templates for {entity}.

INPUT ARTIFACTS (analysis results):
{input_artifacts_for_prompt(input_paths)}

Side files the analysis agents left under .claude/tasks for {entity} are also available.

GENERATION GOALS:
1. Review all extracted analysis data
2. Write a conversion plan: scope, mapping tables, step-by-step implementation guide
3. Generate code templates under {templates_dir}, using this layout:
{TEMPLATE_LAYOUT}
4. DTOs live in the shared project only; do not duplicate them in API or UI projects
5. Repositories use Dapper with parameterized SQL and return DTOs directly

REFERENCE PROJECTS:
{reference_projects_for_prompt(layout)}

OUTPUT:
Primary file (Markdown): {output_path}

Start by summarizing the analysis, then ask which templates to generate first.
"""


def main():
    raise SystemExit(run_stage(MODULE_ID, "Generate the conversion plan and code templates for an entity."))


if __name__ == "__main__":
    main()

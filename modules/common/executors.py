"""
Generation logic for a stage, behind one method: generate(request) -> artifact text.

Executors either return the complete artifact or raise. They never touch the
artifact store's final paths; committing the result is the runner's job.
"""
import json
import os
import re
import subprocess
from typing import Any, Callable, Dict, List, Optional

from modules.common.agent_flags import load_passthrough_config, stage_agent_flags
from modules.common.artifact_store import ArtifactStore
from modules.common.errors import ArtifactIOError, GenerationFailure
from modules.common.utils import ensure_dir
from schemas import RunConfig, StageRequest

FENCED_BLOCK = re.compile(r"```(?:json|markdown|md)?\s*\n(.*?)\n```", re.DOTALL)


class StageExecutor:
    name = "base"

    def generate(self, request: StageRequest) -> str:
        raise NotImplementedError


def _unfence(text: str) -> str:
    """Unwrap text that is nothing but one fenced block."""
    match = FENCED_BLOCK.fullmatch((text or "").strip())
    return match.group(1) if match else (text or "")


def _extract_json_text(text: str) -> str:
    """Agents sometimes wrap JSON in prose plus a fenced block; keep just the block."""
    match = FENCED_BLOCK.search(text or "")
    return match.group(1) if match else (text or "")


def _clear_staging(path: str):
    if os.path.exists(path):
        try:
            os.remove(path)
        except OSError as e:
            raise ArtifactIOError(f"cannot remove staging file {path}: {e}") from e


def _parse_print_output(stdout: Optional[str]) -> Optional[Dict[str, Any]]:
    """`--print --output-format json` emits a single JSON object; tolerate leading noise lines."""
    if not stdout or not stdout.strip():
        return None
    for candidate in (stdout.strip(), stdout.strip().splitlines()[-1]):
        try:
            payload = json.loads(candidate)
        except ValueError:
            continue
        if isinstance(payload, dict):
            return payload
    return None


class AgentCliExecutor(StageExecutor):
    """
    Runs the external coding agent as a subprocess.

    The agent is told to write its artifact to the staging path. Content is taken
    from the staging file first, then from a .claude/tasks side file, then from
    the `result` field printed in non-interactive mode.
    """
    name = "claude-cli"

    def __init__(self, config: RunConfig, store: ArtifactStore, run_id: Optional[str] = None):
        self.config = config
        self.store = store
        self.run_id = run_id

    def build_command(self, request: StageRequest) -> List[str]:
        descriptor = request.descriptor
        agent = self.config.agent
        flags = stage_agent_flags(
            descriptor.system_prompt,
            load_passthrough_config(descriptor.settings, self.config.project_root),
            load_passthrough_config(descriptor.mcp_config, self.config.project_root),
            interactive=request.interactive,
            model=agent.model,
            user_flags=agent.extra_flags,
        )
        return [*agent.command, *flags, request.prompt]

    def build_env(self, request: StageRequest) -> Dict[str, str]:
        env = os.environ.copy()
        env["CLAUDE_PROJECT_DIR"] = self.config.project_root
        env["ENTITY_NAME"] = request.entity
        env["OUTPUT_PATH"] = request.staging_path
        env["STAGE_NAME"] = request.descriptor.name
        if self.run_id:
            env["RUN_ID"] = self.run_id
        return env

    def generate(self, request: StageRequest) -> str:
        staging = request.staging_path
        try:
            ensure_dir(os.path.dirname(staging))
        except OSError as e:
            raise ArtifactIOError(f"cannot create staging directory for {staging}: {e}") from e
        _clear_staging(staging)

        cmd = self.build_command(request)
        try:
            result = subprocess.run(
                cmd,
                cwd=self.config.project_root,
                env=self.build_env(request),
                stdout=None if request.interactive else subprocess.PIPE,
                text=True,
                timeout=self.config.agent.timeout_seconds,
            )
        except FileNotFoundError:
            raise GenerationFailure(f"agent command not found: {cmd[0]}") from None
        except subprocess.TimeoutExpired:
            raise GenerationFailure(f"agent timed out after {self.config.agent.timeout_seconds}s") from None

        try:
            if result.returncode != 0:
                raise GenerationFailure(f"agent exited with code {result.returncode}")
            payload = None if request.interactive else _parse_print_output(result.stdout)
            if payload and payload.get("is_error"):
                raise GenerationFailure(str(payload.get("result") or "agent reported an error"))
            content = self._collect(request, payload)
        finally:
            _clear_staging(staging)
        if content is None:
            raise GenerationFailure(f"agent finished without producing {request.descriptor.artifact}")
        return content

    def _collect(self, request: StageRequest, payload: Optional[Dict[str, Any]]) -> Optional[str]:
        if os.path.isfile(request.staging_path):
            try:
                with open(request.staging_path, "r", encoding="utf-8") as f:
                    return f.read()
            except OSError as e:
                raise ArtifactIOError(f"failed to read {request.staging_path}: {e}") from e
        side = self.store.read_task_file(request.entity, request.descriptor.name)
        if side is not None:
            print(f"[side-file] {request.descriptor.name}: using .claude/tasks output")
            return side
        if payload and isinstance(payload.get("result"), str) and payload["result"].strip():
            text = payload["result"]
            return _extract_json_text(text) if request.descriptor.artifact_format == "json" else _unfence(text)
        return None


class OpenAIExecutor(StageExecutor):
    """Single chat completion per stage; input artifacts are inlined since the model cannot read files."""
    name = "openai"

    def __init__(self, config: RunConfig, run_id: Optional[str] = None,
                 client_factory: Optional[Callable[..., Any]] = None):
        self.config = config
        self.run_id = run_id
        self._client_factory = client_factory

    def _client(self, stage_id: str):
        if self._client_factory:
            return self._client_factory(stage_id=stage_id, run_id=self.run_id)
        from modules.common.openai_client import OpenAI
        return OpenAI(stage_id=stage_id, run_id=self.run_id)

    def build_messages(self, request: StageRequest) -> List[Dict[str, str]]:
        parts = [request.prompt]
        for key in sorted(request.inputs):
            parts.append(f"\n--- INPUT {key} ---\n{request.inputs[key]}")
        if request.descriptor.artifact_format == "json":
            parts.append("\nRespond with the JSON document only.")
        else:
            parts.append("\nRespond with the Markdown document only.")
        return [
            {"role": "system", "content": request.descriptor.system_prompt},
            {"role": "user", "content": "\n".join(parts)},
        ]

    def generate(self, request: StageRequest) -> str:
        descriptor = request.descriptor
        if request.interactive:
            print(f"[warn] {descriptor.name}: openai backend has no interactive mode; running unattended")
        kwargs: Dict[str, Any] = {}
        if descriptor.artifact_format == "json":
            kwargs["response_format"] = {"type": "json_object"}
        completion = self._client(descriptor.name).chat.completions.create(
            model=self.config.agent.model or self.config.agent.openai_model,
            messages=self.build_messages(request),
            **kwargs,
        )
        content = completion.choices[0].message.content if completion.choices else None
        if not content or not content.strip():
            raise GenerationFailure("model returned an empty completion")
        if descriptor.artifact_format == "json":
            return content
        return _unfence(content)


class MockExecutor(StageExecutor):
    """Deterministic stand-in for the agent: no network, same inputs give the same bytes."""
    name = "mock"

    def generate(self, request: StageRequest) -> str:
        descriptor = request.descriptor
        if descriptor.artifact_format == "json":
            payload = {
                "entity": request.entity,
                "stage": descriptor.name,
                "module_id": descriptor.module_id,
                "params": descriptor.params,
                "inputs": sorted(request.inputs),
                "mock": True,
            }
            text = json.dumps(payload, indent=2, sort_keys=True) + "\n"
        else:
            lines = [f"# {request.entity} - {descriptor.name}", "", "_mock output_", "", "## Inputs", ""]
            lines += [f"- {key}" for key in sorted(request.inputs)] or ["- (none)"]
            text = "\n".join(lines) + "\n"
        print(f"[mock] {descriptor.name} generated {len(text)} chars")
        return text


def make_executor(config: RunConfig, store: ArtifactStore, run_id: Optional[str] = None,
                  mock: bool = False) -> StageExecutor:
    backend = "mock" if mock else config.agent.backend
    if backend == "mock":
        return MockExecutor()
    if backend == "openai":
        return OpenAIExecutor(config, run_id=run_id)
    return AgentCliExecutor(config, store, run_id=run_id)

import json
import os
import sys
import tempfile
import textwrap
import unittest
from types import SimpleNamespace
from unittest import mock

sys.path.append(os.path.dirname(os.path.dirname(__file__)))

from modules.common.agent_flags import build_agent_flags, load_passthrough_config, stage_agent_flags
from modules.common.artifact_store import ArtifactStore
from modules.common.errors import ArtifactIOError, GenerationFailure
from modules.common.executors import (AgentCliExecutor, MockExecutor, OpenAIExecutor, _parse_print_output,
                                      make_executor)
from modules.common.stage_runner import StageRunner
from schemas import AgentSettings, RunConfig, StageDescriptor, StageRequest

FAKE_AGENT = textwrap.dedent("""
    import json
    import os
    import sys

    mode = os.environ.get("FAKE_AGENT_MODE", "write")
    out = os.environ["OUTPUT_PATH"]
    if mode == "write":
        with open(out, "w", encoding="utf-8") as f:
            json.dump({"entity": os.environ["ENTITY_NAME"], "stage": os.environ["STAGE_NAME"]}, f)
        print(json.dumps({"result": "wrote the file", "is_error": False}))
    elif mode == "argv":
        with open(out, "w", encoding="utf-8") as f:
            json.dump(sys.argv[1:], f)
    elif mode == "stdout":
        print("warming up")
        print(json.dumps({"result": "Here it is:\\n```json\\n{\\"controls\\": []}\\n```", "is_error": False}))
    elif mode == "error":
        print(json.dumps({"result": "rate limited", "is_error": True}))
    elif mode == "crash":
        sys.exit(3)
    else:
        print(json.dumps({"result": "", "is_error": False}))
""")


def _descriptor(**kwargs):
    fields = dict(name="business-logic", ordinal=3, module_id="business_logic_v1", artifact="business-logic.json",
                  system_prompt="You extract business rules.")
    fields.update(kwargs)
    return StageDescriptor(**fields)


class AgentCliExecutorTests(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.tmp = self._tmp.name
        script = os.path.join(self.tmp, "fake_agent.py")
        with open(script, "w", encoding="utf-8") as f:
            f.write(FAKE_AGENT)
        self.config = RunConfig(project_root=self.tmp, output_root=os.path.join(self.tmp, "output"),
                                tasks_dir=os.path.join(self.tmp, "tasks"),
                                agent=AgentSettings(command=[sys.executable, script], timeout_seconds=60))
        self.store = ArtifactStore(self.config.output_root, {"business-logic": "business-logic.json"},
                                   tasks_dir=self.config.tasks_dir)
        self.executor = AgentCliExecutor(self.config, self.store, run_id="r1")

    def tearDown(self):
        self._tmp.cleanup()

    def _request(self, descriptor=None):
        descriptor = descriptor or _descriptor()
        return StageRequest(descriptor=descriptor, entity="Facility", prompt="Analyze frmFacilityDetail.vb",
                            staging_path=self.store.staging_path("Facility", descriptor.name))

    def _generate(self, mode, request=None):
        with mock.patch.dict(os.environ, {"FAKE_AGENT_MODE": mode}):
            return self.executor.generate(request or self._request())

    def test_staging_file_is_the_artifact(self):
        request = self._request()
        content = self._generate("write", request)
        self.assertEqual(json.loads(content), {"entity": "Facility", "stage": "business-logic"})
        self.assertFalse(os.path.exists(request.staging_path))
        self.assertFalse(self.store.exists("Facility", "business-logic"))

    def test_command_carries_flags_and_prompt(self):
        argv = json.loads(self._generate("argv"))
        self.assertIn("--print", argv)
        self.assertEqual(argv[argv.index("--append-system-prompt") + 1], "You extract business rules.")
        self.assertEqual(argv[-1], "Analyze frmFacilityDetail.vb")

    def test_printed_result_is_used_when_no_file_written(self):
        content = self._generate("stdout")
        self.assertEqual(json.loads(content), {"controls": []})

    def test_side_file_is_used_before_printed_result(self):
        os.makedirs(self.config.tasks_dir)
        with open(os.path.join(self.config.tasks_dir, "Facility_business_logic.json"), "w", encoding="utf-8") as f:
            f.write('{"rules": ["required"]}')
        self.assertEqual(self._generate("empty"), '{"rules": ["required"]}')

    def test_failures_raise_generation_failure(self):
        for mode, message in (("crash", "exited with code 3"), ("error", "rate limited"),
                              ("empty", "without producing business-logic.json")):
            with self.assertRaises(GenerationFailure) as ctx:
                self._generate(mode)
            self.assertIn(message, str(ctx.exception))

    def test_missing_command(self):
        config = self.config.model_copy(update={"agent": AgentSettings(command=["/nonexistent/agent"])})
        with self.assertRaises(GenerationFailure):
            AgentCliExecutor(config, self.store).generate(self._request())

    def test_stale_staging_file_is_not_reused(self):
        request = self._request()
        os.makedirs(os.path.dirname(request.staging_path))
        with open(request.staging_path, "w", encoding="utf-8") as f:
            f.write('{"stale": true}')
        with self.assertRaises(GenerationFailure):
            self._generate("empty", request)

    def test_staging_storage_errors_are_fatal(self):
        with mock.patch("modules.common.executors.ensure_dir", side_effect=PermissionError("read-only")):
            with self.assertRaises(ArtifactIOError):
                self._generate("write")

        request = self._request()
        os.makedirs(os.path.dirname(request.staging_path))
        with open(request.staging_path, "w", encoding="utf-8") as f:
            f.write('{"stale": true}')
        with mock.patch("modules.common.executors.os.remove", side_effect=PermissionError("busy")):
            with self.assertRaises(ArtifactIOError):
                self._generate("write", request)

    def test_runner_aborts_on_staging_storage_error(self):
        stage = _descriptor(prompt_entrypoint=None)
        runner = StageRunner(self.store, self.executor, self.config)
        with mock.patch("modules.common.executors.ensure_dir", side_effect=PermissionError("read-only")):
            with self.assertRaises(ArtifactIOError):
                runner.run(stage, "Facility")
        self.assertFalse(self.store.exists("Facility", "business-logic"))

    def test_environment_names_the_stage(self):
        env = self.executor.build_env(self._request())
        self.assertEqual(env["ENTITY_NAME"], "Facility")
        self.assertEqual(env["STAGE_NAME"], "business-logic")
        self.assertEqual(env["RUN_ID"], "r1")
        self.assertTrue(env["OUTPUT_PATH"].endswith(os.path.join(".staging", "business-logic.json")))


class PrintOutputTests(unittest.TestCase):
    def test_parses_last_line_after_noise(self):
        self.assertEqual(_parse_print_output('loading\n{"result": "ok"}\n'), {"result": "ok"})
        self.assertIsNone(_parse_print_output("plain text"))
        self.assertIsNone(_parse_print_output(""))


class AgentFlagTests(unittest.TestCase):
    def test_user_flags_override_and_pipeline_flags_are_dropped(self):
        flags = build_agent_flags({"print": True, "model": None, "allowedTools": ["Read", "Write"]},
                                  {"entity": "Facility", "verbose": True, "print": False})
        self.assertEqual(flags, ["--allowedTools", "Read", "--allowedTools", "Write", "--verbose"])

    def test_stage_flags_for_unattended_and_interactive(self):
        flags = stage_agent_flags("sys", '{"a":1}', None, interactive=False, model="opus")
        self.assertEqual(flags, ["--append-system-prompt", "sys", "--settings", '{"a":1}', "--model", "opus",
                                 "--print", "--output-format", "json"])
        self.assertNotIn("--print", stage_agent_flags("sys", None, None, interactive=True))

    def test_passthrough_config_is_compacted(self):
        with tempfile.TemporaryDirectory() as tmp:
            with open(os.path.join(tmp, "mcp.json"), "w", encoding="utf-8") as f:
                f.write('{\n  "mcpServers": {}\n}\n')
            self.assertEqual(load_passthrough_config("mcp.json", tmp), '{"mcpServers":{}}')
        self.assertIsNone(load_passthrough_config(None, "/"))


class FakeCompletions:
    def __init__(self, content):
        self.content = content
        self.calls = []

    def create(self, **kwargs):
        self.calls.append(kwargs)
        message = SimpleNamespace(content=self.content)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


class OpenAIExecutorTests(unittest.TestCase):
    def setUp(self):
        self.config = RunConfig(project_root="/", output_root="/tmp/out", tasks_dir="/tmp/tasks")

    def _executor(self, content):
        completions = FakeCompletions(content)
        client = SimpleNamespace(chat=SimpleNamespace(completions=completions))
        return OpenAIExecutor(self.config, client_factory=lambda **kw: client), completions

    def test_json_stage_inlines_inputs(self):
        executor, completions = self._executor('{"rules": []}')
        request = StageRequest(descriptor=_descriptor(needs=["data-access"]), entity="Facility", prompt="go",
                               inputs={"data-access": '{"tables": []}'}, staging_path="/tmp/x.json")
        self.assertEqual(executor.generate(request), '{"rules": []}')
        call = completions.calls[0]
        self.assertEqual(call["model"], "gpt-4.1-mini")
        self.assertEqual(call["response_format"], {"type": "json_object"})
        self.assertIn("--- INPUT data-access ---", call["messages"][1]["content"])
        self.assertEqual(call["messages"][0]["content"], "You extract business rules.")

    def test_markdown_stage_is_unfenced(self):
        executor, completions = self._executor("```markdown\n# Plan\n```")
        descriptor = _descriptor(name="conversion-plan", artifact="conversion-plan.md")
        request = StageRequest(descriptor=descriptor, entity="Facility", prompt="go", staging_path="/tmp/x.md")
        self.assertEqual(executor.generate(request), "# Plan")
        self.assertNotIn("response_format", completions.calls[0])

    def test_empty_completion_fails(self):
        executor, _ = self._executor("  ")
        request = StageRequest(descriptor=_descriptor(), entity="Facility", prompt="go", staging_path="/tmp/x.json")
        with self.assertRaises(GenerationFailure):
            executor.generate(request)


class MakeExecutorTests(unittest.TestCase):
    def test_backend_selection(self):
        store = ArtifactStore("/tmp/out")
        config = RunConfig(project_root="/", output_root="/tmp/out", tasks_dir="/tmp/tasks")
        self.assertIsInstance(make_executor(config, store), AgentCliExecutor)
        self.assertIsInstance(make_executor(config, store, mock=True), MockExecutor)
        openai_config = config.model_copy(update={"agent": AgentSettings(backend="openai")})
        self.assertIsInstance(make_executor(openai_config, store), OpenAIExecutor)


if __name__ == "__main__":
    unittest.main()

import json
import os
import sys
import tempfile
import unittest
from unittest import mock

sys.path.append(os.path.dirname(os.path.dirname(__file__)))

from modules.common.artifact_store import ArtifactStore
from modules.common.errors import ArtifactIOError, GenerationFailure
from modules.common.executors import MockExecutor, StageExecutor
from modules.common.stage_runner import StageRunner, check_artifact_content, load_prompt_builder
from modules.common.utils import ProgressLogger, read_jsonl
from schemas import RunConfig, StageDescriptor


class RecordingExecutor(StageExecutor):
    def __init__(self, result='{"ok": true}', error=None):
        self.result = result
        self.error = error
        self.requests = []

    def generate(self, request):
        self.requests.append(request)
        if self.error:
            raise self.error
        return self.result


def _config(tmp):
    return RunConfig(project_root=tmp, output_root=os.path.join(tmp, "output"),
                     tasks_dir=os.path.join(tmp, "tasks"))


def _stage(name, ordinal, needs=None, artifact=None, **kwargs):
    return StageDescriptor(name=name, ordinal=ordinal, module_id=f"{name.replace('-', '_')}_v1",
                           needs=needs or [], artifact=artifact or f"{name}.json", **kwargs)


class StageRunnerTests(unittest.TestCase):
    def test_success_writes_artifact_and_passes_inputs(self):
        with tempfile.TemporaryDirectory() as tmp:
            config = _config(tmp)
            store = ArtifactStore(config.output_root)
            store.write("Facility", "data-access", '{"procs": []}')
            executor = RecordingExecutor('{"relationships": []}')
            runner = StageRunner(store, executor, config)

            outcome = runner.run(_stage("related-entities", 2, needs=["data-access"]), "Facility")

            self.assertEqual(outcome.status, "succeeded")
            self.assertEqual(outcome.label(), "Succeeded")
            self.assertEqual(store.read("Facility", "related-entities"), '{"relationships": []}')
            request = executor.requests[0]
            self.assertEqual(request.entity, "Facility")
            self.assertEqual(request.inputs, {"data-access": '{"procs": []}'})
            self.assertIn(store.path_for("Facility", "data-access"), request.prompt)
            self.assertIn(request.staging_path, request.prompt)

    def test_missing_dependency_never_calls_executor(self):
        with tempfile.TemporaryDirectory() as tmp:
            config = _config(tmp)
            store = ArtifactStore(config.output_root)
            executor = RecordingExecutor()
            outcome = StageRunner(store, executor, config).run(_stage("validation", 3, needs=["business-logic"]),
                                                                "Facility")
            self.assertEqual(outcome.status, "failed")
            self.assertEqual(outcome.error, "MissingDependency")
            self.assertIn("business-logic", outcome.reason)
            self.assertTrue(outcome.label().startswith("Failed(MissingDependency"))
            self.assertEqual(executor.requests, [])
            self.assertFalse(store.exists("Facility", "validation"))

    def test_generation_failure_leaves_store_untouched(self):
        with tempfile.TemporaryDirectory() as tmp:
            config = _config(tmp)
            store = ArtifactStore(config.output_root)
            store.write("Facility", "security", '{"old": true}')
            executor = RecordingExecutor(error=GenerationFailure("model timeout"))

            outcome = StageRunner(store, executor, config).run(_stage("security", 1), "Facility")

            self.assertEqual(outcome.error, "GenerationFailure")
            self.assertEqual(outcome.label(), "Failed(model timeout)")
            self.assertEqual(store.read("Facility", "security"), '{"old": true}')

    def test_arbitrary_exception_is_generation_failure(self):
        with tempfile.TemporaryDirectory() as tmp:
            config = _config(tmp)
            store = ArtifactStore(config.output_root)
            outcome = StageRunner(store, RecordingExecutor(error=RuntimeError("boom")), config).run(
                _stage("security", 1), "Facility")
            self.assertEqual(outcome.status, "failed")
            self.assertEqual(outcome.reason, "boom")

    def test_unusable_content_is_generation_failure(self):
        with tempfile.TemporaryDirectory() as tmp:
            config = _config(tmp)
            store = ArtifactStore(config.output_root)
            for bad in ("", "not json", '"just a string"'):
                outcome = StageRunner(store, RecordingExecutor(bad), config).run(_stage("security", 1), "Facility")
                self.assertEqual(outcome.error, "GenerationFailure", bad)
            self.assertFalse(store.exists("Facility", "security"))

    def test_markdown_artifact_accepts_any_non_empty_text(self):
        stage = _stage("conversion-plan", 1, artifact="conversion-plan.md")
        self.assertEqual(check_artifact_content(stage, "# Plan\n"), "# Plan\n")
        with self.assertRaises(GenerationFailure):
            check_artifact_content(stage, "   \n")

    def test_io_failure_on_commit_propagates(self):
        with tempfile.TemporaryDirectory() as tmp:
            config = _config(tmp)
            store = ArtifactStore(config.output_root)
            runner = StageRunner(store, RecordingExecutor(), config)
            with mock.patch.object(store, "write", side_effect=ArtifactIOError("disk full")):
                with self.assertRaises(ArtifactIOError):
                    runner.run(_stage("security", 1), "Facility")

    def test_rerun_with_same_inputs_is_idempotent(self):
        with tempfile.TemporaryDirectory() as tmp:
            config = _config(tmp)
            store = ArtifactStore(config.output_root)
            store.write("River", "form-structure-detail", '{"controls": []}')
            runner = StageRunner(store, MockExecutor(), config)
            stage = _stage("tabs", 2, needs=["form-structure-detail"])

            runner.run(stage, "River")
            first = store.read("River", "tabs")
            runner.run(stage, "River")
            self.assertEqual(store.read("River", "tabs"), first)
            self.assertEqual(json.loads(first)["inputs"], ["form-structure-detail"])

    def test_task_files_are_added_for_stages_that_read_them(self):
        with tempfile.TemporaryDirectory() as tmp:
            config = _config(tmp)
            os.makedirs(config.tasks_dir)
            with open(os.path.join(config.tasks_dir, "Facility_business_logic.json"), "w", encoding="utf-8") as f:
                f.write("{}")
            store = ArtifactStore(config.output_root, tasks_dir=config.tasks_dir)
            executor = RecordingExecutor("# Plan\n")
            stage = _stage("conversion-plan", 1, artifact="conversion-plan.md", reads_task_files=True)

            StageRunner(store, executor, config).run(stage, "Facility")

            self.assertIn("task:Facility_business_logic.json", executor.requests[0].inputs)

    def test_interactive_override_reaches_executor(self):
        with tempfile.TemporaryDirectory() as tmp:
            config = _config(tmp)
            store = ArtifactStore(config.output_root)
            executor = RecordingExecutor("# Plan\n")
            stage = _stage("conversion-plan", 1, artifact="conversion-plan.md", interactive=True)
            runner = StageRunner(store, executor, config)
            runner.run(stage, "Facility")
            runner.run(stage, "Facility", interactive=False)
            self.assertEqual([r.interactive for r in executor.requests], [True, False])

    def test_progress_events_are_logged(self):
        with tempfile.TemporaryDirectory() as tmp:
            config = _config(tmp)
            store = ArtifactStore(config.output_root)
            events_path = os.path.join(tmp, "events.jsonl")
            logger = ProgressLogger(state_path=os.path.join(tmp, "state.json"), progress_path=events_path,
                                    run_id="r1", entity="Facility")
            runner = StageRunner(store, RecordingExecutor(error=GenerationFailure("nope")), config, logger=logger)
            runner.run(_stage("security", 5), "Facility")

            events = list(read_jsonl(events_path))
            self.assertEqual([e["status"] for e in events], ["running", "failed"])
            self.assertEqual(events[1]["error"], "GenerationFailure")
            self.assertEqual(events[1]["ordinal"], 5)

    def test_prompt_entrypoint_is_resolved_from_module_path(self):
        builder = load_prompt_builder("modules/analyze/business_logic_v1/main.py:build_prompt")
        self.assertTrue(callable(builder))
        with tempfile.TemporaryDirectory() as tmp:
            config = _config(tmp)
            store = ArtifactStore(config.output_root)
            executor = RecordingExecutor()
            stage = _stage("business-logic", 1,
                           prompt_entrypoint="modules/analyze/business_logic_v1/main.py:build_prompt")
            StageRunner(store, executor, config).run(stage, "Facility")
            self.assertIn("FacilityLocation", executor.requests[0].prompt)


if __name__ == "__main__":
    unittest.main()

import json
import os
import tempfile
import unittest

from modules.common.utils import (
    ProgressLogger,
    PROGRESS_STATUS_VALUES,
    log_llm_usage,
)
from schemas import AgentCallUsage, PipelineState


class ProgressLoggerTests(unittest.TestCase):
    def test_appends_without_clobbering_existing_events(self):
        with tempfile.TemporaryDirectory() as tmp:
            progress_path = os.path.join(tmp, "events.jsonl")
            state_path = os.path.join(tmp, "state.json")

            baseline = {"existing": True}
            with open(progress_path, "w", encoding="utf-8") as f:
                f.write(json.dumps(baseline) + "\n")

            logger = ProgressLogger(state_path=state_path, progress_path=progress_path, run_id="t-run",
                                    entity="Facility")
            logger.log("business-logic", "running", ordinal=3, message="started", module_id="business_logic_v1")

            with open(progress_path, "r", encoding="utf-8") as f:
                lines = [json.loads(line) for line in f if line.strip()]

            self.assertEqual(lines[0], baseline)
            self.assertEqual(lines[1]["stage"], "business-logic")
            self.assertEqual(lines[1]["status"], "running")
            self.assertEqual(lines[1]["entity"], "Facility")
            self.assertEqual(len(lines), 2)

            with open(state_path, "r", encoding="utf-8") as f:
                state = json.load(f)
            stage_state = state["stages"]["business-logic"]
            self.assertEqual(stage_state["status"], "running")
            self.assertEqual(stage_state["ordinal"], 3)
            self.assertEqual(state["entity"], "Facility")

    def test_state_keeps_latest_status_and_artifact(self):
        with tempfile.TemporaryDirectory() as tmp:
            state_path = os.path.join(tmp, "state.json")
            logger = ProgressLogger(state_path=state_path, run_id="t-run")
            logger.log("tabs", "running", ordinal=8)
            logger.log("tabs", "done", ordinal=8, artifact="/out/Facility/tabs.json")
            logger.log("tabs", "warning", message="agent used a side file")
            logger.log("security", "failed", ordinal=5, error="GenerationFailure", message="agent exited with code 1")

            with open(state_path, "r", encoding="utf-8") as f:
                state = PipelineState(**json.load(f))
            self.assertEqual(state.stages["tabs"].status, "done")
            self.assertEqual(state.stages["tabs"].artifact, "/out/Facility/tabs.json")
            self.assertEqual(state.stages["security"].status, "failed")
            self.assertEqual(state.stages["security"].error, "GenerationFailure")

    def test_rejects_invalid_status(self):
        with tempfile.TemporaryDirectory() as tmp:
            progress_path = os.path.join(tmp, "events.jsonl")
            state_path = os.path.join(tmp, "state.json")
            logger = ProgressLogger(state_path=state_path, progress_path=progress_path, run_id="t-run")
            with self.assertRaises(ValueError):
                logger.log("tabs", "bogus")
            self.assertIn("running", PROGRESS_STATUS_VALUES)
            self.assertFalse(os.path.exists(progress_path))


class LlmUsageTests(unittest.TestCase):
    def test_noop_without_sink(self):
        old = os.environ.pop("INSTRUMENT_SINK", None)
        try:
            self.assertIsNone(log_llm_usage("gpt-4.1-mini", 10, 5))
        finally:
            if old is not None:
                os.environ["INSTRUMENT_SINK"] = old

    def test_writes_schema_valid_rows_to_sink(self):
        with tempfile.TemporaryDirectory() as tmp:
            sink = os.path.join(tmp, "calls.jsonl")
            old = os.environ.get("INSTRUMENT_SINK")
            os.environ["INSTRUMENT_SINK"] = sink
            try:
                log_llm_usage("gpt-4.1-mini", 120, 30, request_ms=850.0, stage_id="security", run_id="r1")
            finally:
                if old is None:
                    os.environ.pop("INSTRUMENT_SINK", None)
                else:
                    os.environ["INSTRUMENT_SINK"] = old
            with open(sink, "r", encoding="utf-8") as f:
                row = json.loads(f.readline())
            usage = AgentCallUsage(**row)
            self.assertEqual(usage.stage_id, "security")
            self.assertEqual(usage.prompt_tokens, 120)


if __name__ == "__main__":
    unittest.main()

"""Tests for the subprocess-based objective runner."""
from __future__ import annotations

import os
import tempfile
import threading
import time
import unittest
from pathlib import Path

from ffmtune.cancellation import CancellationToken
from ffmtune.config import TrainerConfig
from ffmtune.runner import (
    TRAINER_BIN_ENV,
    EvaluationOutcome,
    ObjectiveRunner,
    format_param_value,
    resolve_trainer_binary,
)

from trainer_stubs import write_trainer

PARAMS = {"lambda": 0.002, "eta": 0.05, "latent": 4}


class ObjectiveRunnerTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.tmpdir = Path(self._tmp.name)
        self.meta_dir = self.tmpdir / "meta"

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def make_runner(self, body: str, **overrides) -> ObjectiveRunner:
        trainer = write_trainer(self.tmpdir, body)
        settings = {
            "binary": str(trainer),
            "meta_dir": str(self.meta_dir),
            "poll_interval": 0.05,
            "kill_grace_sec": 2.0,
        }
        settings.update(overrides)
        return ObjectiveRunner(TrainerConfig(**settings), environ={})


class ClassificationTests(ObjectiveRunnerTestCase):
    def test_scored_result_uses_best_score_exactly(self) -> None:
        runner = self.make_runner(
            """
            write_meta({"best_iteration": 42, "best_score": 0.1834})
            """
        )
        result = runner.evaluate(7, PARAMS, CancellationToken())
        self.assertEqual(result.outcome, EvaluationOutcome.SCORED)
        self.assertEqual(result.score, 0.1834)
        self.assertEqual(result.iteration_reached, 42)
        self.assertTrue((self.meta_dir / "ffm-meta-7.json").exists())

    def test_non_zero_exit_with_valid_meta_is_scored(self) -> None:
        runner = self.make_runner(
            """
            write_meta({"best_iteration": 12, "best_score": 0.45})
            print("early stopping at iteration 15")
            sys.exit(1)
            """
        )
        result = runner.evaluate(1, PARAMS)
        self.assertEqual(result.outcome, EvaluationOutcome.SCORED)
        self.assertEqual(result.return_code, 1)
        self.assertEqual(result.score, 0.45)
        self.assertIn("early stopping", result.stdout)

    def test_trainer_key_best_va_loss_is_accepted(self) -> None:
        runner = self.make_runner(
            """
            write_meta({"best_iteration": 3, "best_va_loss": 0.5})
            """
        )
        result = runner.evaluate(2, PARAMS)
        self.assertEqual(result.outcome, EvaluationOutcome.SCORED)
        self.assertEqual(result.score, 0.5)

    def test_missing_meta_file_is_process_error(self) -> None:
        runner = self.make_runner(
            """
            sys.stderr.write("segfault before first checkpoint\\n")
            sys.exit(139)
            """
        )
        result = runner.evaluate(3, PARAMS)
        self.assertEqual(result.outcome, EvaluationOutcome.PROCESS_ERROR)
        self.assertIsNone(result.score)
        self.assertIn("segfault", result.stderr)
        self.assertTrue(result.reason.startswith("missing_output"))

    def test_stale_meta_from_earlier_run_is_not_reused(self) -> None:
        self.meta_dir.mkdir(parents=True)
        (self.meta_dir / "ffm-meta-4.json").write_text(
            '{"best_iteration": 9, "best_score": 0.2}', encoding="utf-8"
        )
        runner = self.make_runner("sys.exit(2)\n")
        result = runner.evaluate(4, PARAMS)
        self.assertEqual(result.outcome, EvaluationOutcome.PROCESS_ERROR)

    def test_invalid_json_is_malformed(self) -> None:
        runner = self.make_runner('write_meta("{not json")\n')
        result = runner.evaluate(5, PARAMS)
        self.assertEqual(result.outcome, EvaluationOutcome.MALFORMED_OUTPUT)

    def test_undecodable_meta_is_malformed(self) -> None:
        runner = self.make_runner(
            """
            with open(meta_path, "wb") as fh:
                fh.write(b"\\xff\\xfe{}")
            """
        )
        result = runner.evaluate(14, PARAMS)
        self.assertEqual(result.outcome, EvaluationOutcome.MALFORMED_OUTPUT)
        self.assertTrue(result.reason.startswith("invalid_meta"))
        self.assertIsNone(result.score)

    def test_missing_field_is_malformed(self) -> None:
        runner = self.make_runner('write_meta({"best_iteration": 10})\n')
        result = runner.evaluate(6, PARAMS)
        self.assertEqual(result.outcome, EvaluationOutcome.MALFORMED_OUTPUT)

    def test_all_zero_meta_is_malformed(self) -> None:
        runner = self.make_runner('write_meta({"best_iteration": 0, "best_score": 0})\n')
        result = runner.evaluate(8, PARAMS)
        self.assertEqual(result.outcome, EvaluationOutcome.MALFORMED_OUTPUT)
        self.assertEqual(result.reason, "empty_meta")
        self.assertIsNone(result.score)

    def test_zero_score_with_iterations_is_scored(self) -> None:
        runner = self.make_runner('write_meta({"best_iteration": 5, "best_score": 0.0})\n')
        result = runner.evaluate(9, PARAMS)
        self.assertEqual(result.outcome, EvaluationOutcome.SCORED)
        self.assertEqual(result.score, 0.0)

    def test_launch_failure_is_process_error(self) -> None:
        config = TrainerConfig(
            binary=str(self.tmpdir / "does-not-exist"),
            meta_dir=str(self.meta_dir),
        )
        runner = ObjectiveRunner(config, environ={})
        result = runner.evaluate(10, PARAMS)
        self.assertEqual(result.outcome, EvaluationOutcome.PROCESS_ERROR)
        self.assertTrue(result.reason.startswith("launch_failed"))


class SupervisionTests(ObjectiveRunnerTestCase):
    SLOW_TRAINER = """
    with open(os.path.join(os.path.dirname(meta_path), "pid"), "w") as fh:
        fh.write(str(os.getpid()))
    write_meta({"best_iteration": 1, "best_score": 0.9})
    time.sleep(30)
    """

    def _pid(self) -> int:
        pid_path = self.meta_dir / "pid"
        deadline = time.monotonic() + 10
        while not pid_path.exists() and time.monotonic() < deadline:
            time.sleep(0.02)
        return int(pid_path.read_text(encoding="utf-8"))

    def test_cancellation_terminates_the_trainer(self) -> None:
        runner = self.make_runner(self.SLOW_TRAINER)
        token = CancellationToken()
        outcome = {}

        def evaluate() -> None:
            outcome["result"] = runner.evaluate(11, PARAMS, token)

        worker = threading.Thread(target=evaluate)
        worker.start()
        pid = self._pid()
        token.cancel("test")
        worker.join(timeout=15)

        self.assertFalse(worker.is_alive())
        result = outcome["result"]
        self.assertEqual(result.outcome, EvaluationOutcome.CANCELLED)
        self.assertIsNone(result.score)
        self.assertLess(result.elapsed_seconds, 15)
        with self.assertRaises(ProcessLookupError):
            os.kill(pid, 0)

    def test_already_cancelled_token_skips_launch(self) -> None:
        runner = self.make_runner(self.SLOW_TRAINER)
        token = CancellationToken()
        token.cancel()
        result = runner.evaluate(12, PARAMS, token)
        self.assertEqual(result.outcome, EvaluationOutcome.CANCELLED)
        self.assertFalse((self.meta_dir / "pid").exists())

    def test_timeout_is_process_error(self) -> None:
        runner = self.make_runner(self.SLOW_TRAINER, timeout_sec=0.5)
        result = runner.evaluate(13, PARAMS, CancellationToken())
        self.assertEqual(result.outcome, EvaluationOutcome.PROCESS_ERROR)
        self.assertEqual(result.reason, "timeout")


class CommandLineTests(unittest.TestCase):
    def test_command_follows_trainer_argument_order(self) -> None:
        config = TrainerConfig(
            binary="./ffm-train",
            train_path="train.txt",
            valid_path="valid.txt",
            auto_stop_threshold=3,
            max_iterations=500,
        )
        runner = ObjectiveRunner(config, environ={})
        command = runner.build_command(
            {"latent": 8, "lambda": 1e-05, "eta": 0.25},
            Path("meta/ffm-meta-1.json"),
        )
        self.assertEqual(
            command,
            [
                "./ffm-train",
                "-p", "valid.txt",
                "--auto-stop", "--auto-stop-threshold", "3",
                "-l", "1e-05",
                "-r", "0.25",
                "-k", "8",
                "-t", "500",
                "--json-meta", str(Path("meta/ffm-meta-1.json")),
                "train.txt",
            ],
        )

    def test_unknown_parameter_is_rejected(self) -> None:
        runner = ObjectiveRunner(TrainerConfig(), environ={})
        with self.assertRaises(ValueError):
            runner.build_command({"dropout": 0.1}, Path("meta.json"))

    def test_float_formatting_round_trips(self) -> None:
        value = 0.000123456789
        self.assertEqual(float(format_param_value(value)), value)
        self.assertEqual(format_param_value(16), "16")

    def test_environment_overrides_binary(self) -> None:
        self.assertEqual(
            resolve_trainer_binary("./ffm-train", {TRAINER_BIN_ENV: "/opt/ffm/bin/ffm-train"}),
            "/opt/ffm/bin/ffm-train",
        )
        self.assertEqual(resolve_trainer_binary("./ffm-train", {TRAINER_BIN_ENV: " "}), "./ffm-train")
        runner = ObjectiveRunner(TrainerConfig(), environ={TRAINER_BIN_ENV: "/usr/local/bin/ffm"})
        self.assertEqual(runner.binary, "/usr/local/bin/ffm")


if __name__ == "__main__":  # pragma: no cover
    unittest.main()

import logging
import os
import signal
import sys
import tempfile
import textwrap
import threading
import time
import unittest
from pathlib import Path

from fakes import FakeSpawner, make_config

from wavegrid.launcher import CANCELLED, COMPLETED, main, prepare_reports_dir, run_grid
from wavegrid.supervisor import ProcessSupervisor

LOGGER = logging.getLogger("wavegrid.tests")

SCENARIO = ["steps=[0.01,0.001,0.0001]", "ks=[1,2]", "num_gpus=2", "tasks_per_core=1"]


class LauncherTestCase(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        self.workdir = Path(self._tmp.name)

    def config(self, *overrides):
        return make_config(self.workdir, *overrides)

    @property
    def reports(self):
        return self.workdir / "reports" / "ResNet34-bi-cifar100"


class TestRunGrid(LauncherTestCase):
    def test_three_waves_of_two(self):
        spawner = FakeSpawner()
        result = run_grid(self.config(*SCENARIO), LOGGER, spawn=spawner)

        self.assertEqual(result.status, COMPLETED)
        self.assertEqual(result.exit_code, 0)
        self.assertEqual(result.total, 6)
        self.assertEqual(result.waves, 3)
        self.assertEqual([t.wave for t in result.tasks], [1, 1, 2, 2, 3, 3])
        first, second = result.tasks[:2]
        self.assertEqual((first.config.k, first.config.step_size, first.gpu), (1, 0.01, 0))
        self.assertEqual((second.config.k, second.config.step_size, second.gpu), (2, 0.01, 1))
        self.assertEqual([t.index for t in result.tasks], [1, 2, 3, 4, 5, 6])
        self.assertEqual([t.gpu for t in result.tasks], [0, 1, 0, 1, 0, 1])

    def test_next_wave_starts_after_previous_one_exits(self):
        spawner = FakeSpawner()
        unfinished_at_spawn = []

        def record(process):
            finished_waves = (len(spawner.processes) - 1) // 2 * 2
            earlier = spawner.processes[:finished_waves]
            unfinished_at_spawn.append(sum(1 for p in earlier if p.returncode is None))

        spawner.on_spawn = record
        run_grid(self.config(*SCENARIO), LOGGER, spawn=spawner)
        self.assertEqual(unfinished_at_spawn, [0] * 6)
        self.assertTrue(all(p.wait_calls == 1 for p in spawner.processes))

    def test_child_failure_does_not_stop_the_batch(self):
        spawner = FakeSpawner(returncodes={1: 1, 3: 137})
        result = run_grid(self.config(*SCENARIO), LOGGER, spawn=spawner)
        self.assertEqual(result.status, COMPLETED)
        self.assertEqual(result.exit_code, 0)
        self.assertEqual(len(spawner.processes), 6)
        self.assertEqual([t.status for t in result.failed], ["FAIL(1)", "FAIL(137)"])

    def test_interrupt_terminates_wave_and_stops(self):
        supervisor = ProcessSupervisor(LOGGER)
        spawner = FakeSpawner(hang=True)

        def arm(process):
            process.on_wait = lambda: supervisor.handle_signal(signal.SIGINT, None)

        spawner.on_spawn = arm
        result = run_grid(self.config(*SCENARIO), LOGGER, spawn=spawner, supervisor=supervisor)

        self.assertEqual(result.status, CANCELLED)
        self.assertEqual(result.exit_code, 1)
        self.assertEqual(len(spawner.processes), 2)
        self.assertEqual([p.terminate_calls for p in spawner.processes], [1, 1])
        self.assertEqual([t.returncode for t in result.tasks], [-15, -15])

    def test_spawn_error_mid_wave_keeps_going(self):
        spawner = FakeSpawner(errors={1: PermissionError(13, "Permission denied")})
        result = run_grid(self.config(*SCENARIO), LOGGER, spawn=spawner)

        self.assertEqual(result.status, COMPLETED)
        self.assertEqual(result.exit_code, 0)
        self.assertEqual(len(result.tasks), 6)
        self.assertEqual(len(spawner.processes), 5)
        self.assertEqual(spawner.processes[0].wait_calls, 1)
        self.assertEqual(result.tasks[0].status, "OK")
        self.assertEqual([t.status for t in result.failed], ["SPAWN FAILED"])

    def test_unexpected_error_terminates_running_children(self):
        spawner = FakeSpawner(hang=True, errors={1: RuntimeError("spawner broke")})
        with self.assertRaises(RuntimeError):
            run_grid(self.config(*SCENARIO), LOGGER, spawn=spawner)
        self.assertEqual(len(spawner.processes), 1)
        self.assertEqual(spawner.processes[0].terminate_calls, 1)

    def test_empty_grid_is_a_noop(self):
        spawner = FakeSpawner()
        result = run_grid(self.config("steps=[]"), LOGGER, spawn=spawner)
        self.assertEqual(result.status, COMPLETED)
        self.assertEqual(result.total, 0)
        self.assertEqual(result.waves, 0)
        self.assertEqual(spawner.processes, [])

    def test_reports_dir_is_emptied_before_launch(self):
        (self.reports / "old_run").mkdir(parents=True)
        (self.reports / "old_run" / "metrics.json").write_text("{}")
        (self.reports / "stale.csv").write_text("x")

        run_grid(self.config(*SCENARIO), LOGGER, spawn=FakeSpawner())

        self.assertTrue(self.reports.is_dir())
        self.assertEqual(list(self.reports.iterdir()), [])

    def test_dry_run_leaves_reports_alone(self):
        (self.reports).mkdir(parents=True)
        (self.reports / "keep.txt").write_text("x")
        spawner = FakeSpawner()

        result = run_grid(self.config(*SCENARIO, "dry_run=true"), LOGGER, spawn=spawner)

        self.assertEqual(result.status, COMPLETED)
        self.assertEqual(len(result.tasks), 6)
        self.assertEqual(spawner.processes, [])
        self.assertTrue((self.reports / "keep.txt").exists())


class TestPrepareReportsDir(LauncherTestCase):
    def test_creates_missing_directory(self):
        path = prepare_reports_dir(self.workdir / "reports", "fresh", LOGGER)
        self.assertTrue(path.is_dir())

    def test_removes_hidden_files_and_symlinks(self):
        target = self.workdir / "outside.txt"
        target.write_text("keep me")
        self.reports.mkdir(parents=True)
        (self.reports / ".hidden").write_text("x")
        os.symlink(target, self.reports / "link")

        prepare_reports_dir(self.workdir / "reports", "ResNet34-bi-cifar100", LOGGER)

        self.assertEqual(list(self.reports.iterdir()), [])
        self.assertTrue(target.exists())


class TestMain(LauncherTestCase):
    def test_invalid_config_exits_before_launch(self):
        self.assertEqual(main([f"reports_root={self.workdir}/reports", "num_gpus=0"]), 2)
        self.assertFalse((self.workdir / "reports").exists())

    def test_missing_python_exits_before_launch(self):
        code = main(["--python", "/nonexistent/python3", f"reports_root={self.workdir}/reports"])
        self.assertEqual(code, 2)
        self.assertFalse((self.workdir / "reports").exists())

    def test_real_children(self):
        trainer = self.workdir / "stub_trainer.py"
        trainer.write_text(
            textwrap.dedent(
                """
                import argparse
                from pathlib import Path

                parser = argparse.ArgumentParser()
                parser.add_argument("--K", type=int)
                parser.add_argument("--step_size")
                parser.add_argument("--cuda_core")
                parser.add_argument("--training_mode")
                parser.add_argument("--reports_dir")
                args, _ = parser.parse_known_args()
                out = Path("reports") / args.reports_dir / f"{args.K}_{args.step_size}.txt"
                out.write_text(f"{args.training_mode} {args.cuda_core}")
                """
            )
        )
        (self.reports).mkdir(parents=True)
        (self.reports / "stale.txt").write_text("x")
        previous = os.getcwd()
        os.chdir(self.workdir)
        self.addCleanup(os.chdir, previous)

        code = main(
            [
                "--python",
                sys.executable,
                "--train-module",
                "stub_trainer",
                "reports_root=reports",
                "poll_interval=0.05",
                *SCENARIO,
            ]
        )

        self.assertEqual(code, 0)
        outputs = sorted(p.name for p in self.reports.iterdir())
        self.assertEqual(
            outputs,
            sorted(f"{k}_{step}.txt" for step in ("0.01", "0.001", "0.0001") for k in (1, 2)),
        )
        self.assertEqual((self.reports / "1_0.01.txt").read_text(), "entire 0")
        self.assertEqual((self.reports / "2_0.01.txt").read_text(), "blockwise_sequential 1")


if __name__ == "__main__":
    unittest.main()


SLEEPER = """
import argparse
import time
from pathlib import Path

parser = argparse.ArgumentParser()
parser.add_argument("--K", type=int)
parser.add_argument("--step_size")
parser.add_argument("--reports_dir")
args, _ = parser.parse_known_args()
out = Path("reports") / args.reports_dir
(out / f"started_{args.K}_{args.step_size}").write_text("")
time.sleep(30)
(out / f"done_{args.K}_{args.step_size}").write_text("")
"""


class TestInterruptWithRealSignal(LauncherTestCase):
    """Sends SIGINT to this process once the first wave's children are up."""

    def setUp(self):
        super().setUp()
        (self.workdir / "stub_sleeper.py").write_text(textwrap.dedent(SLEEPER))
        previous = os.getcwd()
        os.chdir(self.workdir)
        self.addCleanup(os.chdir, previous)

    def _interrupt_when_started(self, expected):
        def interrupt():
            deadline = time.monotonic() + 20
            while time.monotonic() < deadline:
                if len(list(self.reports.glob("started_*"))) >= expected:
                    break
                time.sleep(0.05)
            os.kill(os.getpid(), signal.SIGINT)

        thread = threading.Thread(target=interrupt, daemon=True)
        thread.start()
        return thread

    def test_main_returns_one_and_stops_children(self):
        thread = self._interrupt_when_started(2)
        code = main(
            [
                "--python",
                sys.executable,
                "--train-module",
                "stub_sleeper",
                "reports_root=reports",
                "poll_interval=0.2",
                *SCENARIO,
            ]
        )
        thread.join(5)

        self.assertEqual(code, 1)
        self.assertEqual(len(list(self.reports.glob("started_*"))), 2)
        self.assertEqual(list(self.reports.glob("done_*")), [])

    def test_children_exit_by_sigterm(self):
        cfg = self.config(
            *SCENARIO,
            f"python={sys.executable}",
            "train_module=stub_sleeper",
            "reports_root=reports",
            "poll_interval=1.0",
        )
        supervisor = ProcessSupervisor(LOGGER)
        thread = self._interrupt_when_started(2)
        with supervisor.install_signal_handlers():
            result = run_grid(cfg, LOGGER, supervisor=supervisor)
        thread.join(5)

        self.assertEqual(result.status, CANCELLED)
        self.assertEqual(result.exit_code, 1)
        self.assertEqual(len(result.tasks), 2)
        self.assertEqual([t.returncode for t in result.tasks], [-signal.SIGTERM, -signal.SIGTERM])

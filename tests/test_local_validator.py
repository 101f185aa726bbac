import asyncio
import unittest
from types import SimpleNamespace
from unittest.mock import patch

import psutil

from cluster_env import ClusterInfo
from deploy_errors import ValidatorStartError
from deploy_run import DeploymentRun
from fakes import FakeProcess, FakeRunner
from local_validator import CleanupCoordinator, ValidatorProcessManager

LOCAL = ClusterInfo("localnet", "http://localhost:8899", True)


class IsRunningTests(unittest.TestCase):
    def _proc(self, name, cmdline):
        return SimpleNamespace(info={"name": name, "cmdline": cmdline})

    @patch("local_validator.psutil.process_iter")
    def test_detects_validator_by_name(self, mock_iter):
        mock_iter.return_value = [
            self._proc("bash", ["bash"]),
            self._proc("solana-test-validator", ["solana-test-validator", "--reset"]),
        ]
        self.assertTrue(ValidatorProcessManager(FakeRunner()).is_running())

    @patch("local_validator.psutil.process_iter")
    def test_detects_validator_by_cmdline(self, mock_iter):
        mock_iter.return_value = [self._proc("node", ["/opt/bin/solana-test-validator", "--quiet"])]
        self.assertTrue(ValidatorProcessManager(FakeRunner()).is_running())

    @patch("local_validator.psutil.process_iter")
    def test_no_match_is_not_running(self, mock_iter):
        mock_iter.return_value = [self._proc("python", None), self._proc(None, ["sleep", "10"])]
        self.assertFalse(ValidatorProcessManager(FakeRunner()).is_running())

    @patch("local_validator.psutil.process_iter")
    def test_scan_failure_is_not_running(self, mock_iter):
        mock_iter.side_effect = psutil.AccessDenied()
        self.assertFalse(ValidatorProcessManager(FakeRunner()).is_running())


class ValidatorStartTests(unittest.IsolatedAsyncioTestCase):
    def make_manager(self, timeout=30.0):
        runner = FakeRunner()
        runner.process = FakeProcess()
        manager = ValidatorProcessManager(runner, startup_timeout=timeout)
        self.addCleanup(manager.close)
        return manager, runner, runner.process

    async def test_spawns_with_reset_and_fixed_ledger(self):
        manager, runner, process = self.make_manager(timeout=0.01)
        await manager.start()
        args = runner.spawn_calls[0]
        self.assertIn("--reset", args)
        self.assertEqual(args[args.index("--ledger") + 1], ".anchor/test-ledger")

    async def test_listening_token_resolves_before_timeout(self):
        manager, _, process = self.make_manager(timeout=30.0)
        process.write_stdout("JSON RPC URL: http://127.0.0.1:8899\n")
        process.write_stdout("Listening on 0.0.0.0:8899\n")
        started = await asyncio.wait_for(manager.start(), timeout=2)
        self.assertIs(started, process)
        self.assertEqual(process.signals, [])

    async def test_timeout_without_events_is_optimistic_success(self):
        manager, _, process = self.make_manager(timeout=0.05)
        started = await asyncio.wait_for(manager.start(), timeout=2)
        self.assertIs(started, process)
        self.assertIsNone(process.returncode)

    async def test_error_on_stderr_rejects_and_stops_process(self):
        manager, _, process = self.make_manager(timeout=30.0)
        process.write_stderr("Error: failed to bind 0.0.0.0:8899\n")
        with self.assertRaises(ValidatorStartError):
            await asyncio.wait_for(manager.start(), timeout=2)
        self.assertEqual(process.signals, ["SIGTERM"])
        self.assertTrue(process.released)

    async def test_nonzero_exit_rejects(self):
        manager, _, process = self.make_manager(timeout=30.0)
        asyncio.get_running_loop().call_later(0.01, process.exit, 1)
        with self.assertRaises(ValidatorStartError) as ctx:
            await asyncio.wait_for(manager.start(), timeout=2)
        self.assertIn("code=1", str(ctx.exception))

    async def test_zero_exit_does_not_reject(self):
        manager, _, process = self.make_manager(timeout=0.1)
        asyncio.get_running_loop().call_later(0.01, process.exit, 0)
        started = await asyncio.wait_for(manager.start(), timeout=2)
        self.assertIs(started, process)

    async def test_spawn_failure_rejects(self):
        manager, runner, _ = self.make_manager()
        runner.spawn_error = FileNotFoundError("solana-test-validator")
        with self.assertRaises(ValidatorStartError):
            await manager.start()

    async def test_late_events_after_success_are_ignored(self):
        manager, _, process = self.make_manager(timeout=30.0)
        process.write_stdout("Listening\n")
        started = await asyncio.wait_for(manager.start(), timeout=2)
        process.write_stderr("Error: something late\n")
        process.exit(1)
        await asyncio.sleep(0.01)
        self.assertIs(started, process)
        self.assertEqual(process.signals, [])

    async def test_cancelled_start_stops_spawned_process(self):
        manager, _, process = self.make_manager(timeout=30.0)
        task = asyncio.create_task(manager.start())
        await asyncio.sleep(0.01)
        task.cancel()
        with self.assertRaises(asyncio.CancelledError):
            await task
        self.assertEqual(process.signals, ["SIGTERM"])
        self.assertTrue(process.released)

    async def test_first_event_wins(self):
        manager, _, process = self.make_manager(timeout=30.0)
        process.write_stdout("Listening\n")
        process.write_stderr("Error: too late\n")
        # stdout watcher is scheduled first and settles the race
        started = await asyncio.wait_for(manager.start(), timeout=2)
        self.assertIs(started, process)


class CleanupTests(unittest.IsolatedAsyncioTestCase):
    async def test_no_handle_is_noop(self):
        run = DeploymentRun(LOCAL)
        await CleanupCoordinator(grace_period=0.05).cleanup(run)
        await CleanupCoordinator(grace_period=0.05).cleanup(None)
        self.assertIsNone(run.validator_process)

    async def test_graceful_exit_sends_no_kill(self):
        process = FakeProcess(exit_on_terminate=True)
        run = DeploymentRun(LOCAL, validator_process=process)
        await CleanupCoordinator(grace_period=1.0).cleanup(run)
        self.assertEqual(process.signals, ["SIGTERM"])
        self.assertTrue(process.released)
        self.assertIsNone(run.validator_process)

    async def test_stuck_process_is_killed_once(self):
        process = FakeProcess(exit_on_terminate=False)
        run = DeploymentRun(LOCAL, validator_process=process)
        await CleanupCoordinator(grace_period=0.05).cleanup(run)
        self.assertEqual(process.signals, ["SIGTERM", "SIGKILL"])

    async def test_cleanup_is_idempotent(self):
        process = FakeProcess()
        run = DeploymentRun(LOCAL, validator_process=process)
        cleaner = CleanupCoordinator(grace_period=0.05)
        await cleaner.cleanup(run)
        await cleaner.cleanup(run)
        self.assertEqual(process.signals, ["SIGTERM"])

    async def test_cancelled_cleanup_still_escalates_to_kill(self):
        process = FakeProcess(exit_on_terminate=False)
        run = DeploymentRun(LOCAL, validator_process=process)
        cleaner = CleanupCoordinator(grace_period=0.2)
        first = asyncio.create_task(cleaner.cleanup(run))
        await asyncio.sleep(0.05)
        first.cancel()
        with self.assertRaises(asyncio.CancelledError):
            await first
        self.assertEqual(process.signals, ["SIGTERM"])

        # the handle is gone, but a second call waits for the same stop sequence
        await cleaner.cleanup(run)
        self.assertEqual(process.signals, ["SIGTERM", "SIGKILL"])
        self.assertTrue(process.released)

    async def test_already_exited_process_gets_no_signal(self):
        process = FakeProcess()
        process.exit(0)
        run = DeploymentRun(LOCAL, validator_process=process)
        await CleanupCoordinator(grace_period=0.05).cleanup(run)
        self.assertEqual(process.signals, [])

    async def test_signal_errors_are_logged_not_raised(self):
        process = FakeProcess()

        def boom():
            raise ProcessLookupError("gone")

        process.terminate = boom
        run = DeploymentRun(LOCAL, validator_process=process)
        with self.assertLogs("local_validator", level="WARNING") as logs:
            await CleanupCoordinator(grace_period=0.05).cleanup(run)
        self.assertTrue(any("gone" in line for line in logs.output))
        self.assertTrue(process.released)


if __name__ == "__main__":
    unittest.main()

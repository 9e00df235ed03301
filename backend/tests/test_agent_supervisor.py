"""
Agent supervisor tests with fake processes, a manual scheduler and a
controllable clock. No real subprocesses are spawned.
"""

import io
import json
import unittest

from canteen.agents import AgentCredentials, AgentSupervisor, AgentUnavailableError, PrintAck
from canteen.agents.config_file import load_agent_config
from canteen.errors import ServiceUnavailableError


class FakeProcess:
    _next_pid = 1000

    def __init__(self, command, env):
        FakeProcess._next_pid += 1
        self.pid = FakeProcess._next_pid
        self.command = command
        self.env = env
        self.stdin = io.StringIO()
        self.returncode = None
        self.terminated = False

    def poll(self):
        return self.returncode

    def terminate(self):
        self.terminated = True
        self.returncode = -15

    def kill(self):
        self.returncode = -9

    def wait(self, timeout=None):
        return self.returncode

    def frames(self):
        return [json.loads(line) for line in self.stdin.getvalue().splitlines()]


class ManualTimer:
    def __init__(self, delay, func, args):
        self.delay = delay
        self.func = func
        self.args = args
        self.cancelled = False

    def cancel(self):
        self.cancelled = True

    def fire(self):
        if not self.cancelled:
            self.func(*self.args)


class SupervisorTestCase(unittest.TestCase):
    def setUp(self):
        self.now = 1_700_000_000.0
        self.processes = []
        self.timers = []
        self.supervisor = AgentSupervisor(
            command=["pos-agent"],
            backend_url="http://backend.test",
            heartbeat_timeout=120.0,
            stale_restart_delay=5.0,
            crash_restart_delay=10.0,
            spawner=self.spawn,
            scheduler=self.schedule,
            clock=lambda: self.now,
            watch_processes=False,
            base_env={"PATH": "/usr/bin"},
        )
        self.creds = AgentCredentials(theater_id=7, username="agent7", password="Password123", pin="4321", label="Screen 7")

    def spawn(self, command, env):
        process = FakeProcess(command, env)
        self.processes.append(process)
        return process

    def schedule(self, delay, func, *args):
        timer = ManualTimer(delay, func, args)
        self.timers.append(timer)
        return timer

    def live_timers(self):
        return [t for t in self.timers if not t.cancelled]


class TestLifecycle(SupervisorTestCase):
    def test_start_is_single_instance(self):
        self.assertEqual(self.supervisor.start(7, self.creds), "started")
        self.assertEqual(self.supervisor.start(7, self.creds), "already_running")
        self.assertEqual(len(self.processes), 1)
        self.assertTrue(self.supervisor.is_healthy(7))

    def test_child_environment_carries_credentials(self):
        self.supervisor.start(7, self.creds)
        env = self.processes[0].env
        self.assertEqual(env["THEATER_ID"], "7")
        self.assertEqual(env["THEATER_USERNAME"], "agent7")
        self.assertEqual(env["THEATER_PASSWORD"], "Password123")
        self.assertEqual(env["THEATER_PIN"], "4321")
        self.assertEqual(env["BACKEND_URL"], "http://backend.test")
        self.assertEqual(env["PATH"], "/usr/bin")

    def test_stale_heartbeat_terminates_and_restarts(self):
        self.supervisor.start(7, self.creds)
        first = self.processes[0]
        first_started = self.supervisor.status()[0]["started_at"]

        self.now += 121
        self.assertFalse(self.supervisor.is_healthy(7))
        self.assertEqual(self.supervisor.check_health(), [7])
        self.assertTrue(first.terminated)
        self.assertEqual(self.supervisor.status(), [])

        timer = self.live_timers()[-1]
        self.assertEqual(timer.delay, 5.0)
        self.now += 5
        timer.fire()

        self.assertEqual(len(self.processes), 2)
        status = self.supervisor.status()[0]
        self.assertEqual(status["pid"], self.processes[1].pid)
        self.assertGreater(status["started_at"], first_started)
        self.assertTrue(status["healthy"])

    def test_output_refreshes_heartbeat(self):
        self.supervisor.start(7, self.creds)
        self.now += 100
        self.supervisor.on_output(7, "connected; printers: []\n")
        self.now += 100
        self.assertTrue(self.supervisor.is_healthy(7))
        self.assertEqual(self.supervisor.check_health(), [])

    def test_crash_restarts_after_delay(self):
        self.supervisor.start(7, self.creds)
        self.processes[0].returncode = 1
        self.supervisor.notify_exit(7, 1)

        timer = self.live_timers()[-1]
        self.assertEqual(timer.delay, 10.0)
        timer.fire()
        self.assertEqual(len(self.processes), 2)
        self.assertTrue(self.supervisor.is_healthy(7))

    def test_clean_exit_is_not_restarted(self):
        self.supervisor.start(7, self.creds)
        self.processes[0].returncode = 0
        self.supervisor.notify_exit(7, 0)
        self.assertEqual(self.live_timers(), [])

    def test_stop_forgets_credentials(self):
        self.supervisor.start(7, self.creds)
        self.assertTrue(self.supervisor.stop(7))
        self.assertTrue(self.processes[0].terminated)
        self.assertFalse(self.supervisor.stop(7))

        # The process exit arrives after the stop
        self.supervisor.notify_exit(7, -15, handle=None)
        self.assertEqual(self.live_timers(), [])

    def test_stop_cancels_pending_restart(self):
        self.supervisor.start(7, self.creds)
        self.supervisor.notify_exit(7, 1)
        timer = self.live_timers()[-1]

        self.supervisor.stop(7)
        self.assertTrue(timer.cancelled)
        timer.func(*timer.args)
        self.assertEqual(len(self.processes), 1)

    def test_shutdown_stops_everything_and_refuses_starts(self):
        self.supervisor.start(7, self.creds)
        self.supervisor.start(8, AgentCredentials(theater_id=8, username="agent8", password="Password123"))
        self.supervisor.shutdown()

        self.assertTrue(all(p.terminated for p in self.processes))
        self.assertEqual(self.supervisor.status(), [])
        with self.assertRaises(ServiceUnavailableError):
            self.supervisor.start(7, self.creds)

    def test_spawn_failure_is_service_unavailable(self):
        def broken(command, env):
            raise OSError("no such file")

        self.supervisor.spawner = broken
        with self.assertRaises(ServiceUnavailableError):
            self.supervisor.start(7, self.creds)
        self.assertEqual(self.supervisor.pending_starts(), [])

    def test_restart_reuses_last_credentials(self):
        self.assertIsNone(self.supervisor.restart(7))
        self.supervisor.start(7, self.creds)

        self.assertEqual(self.supervisor.restart(7), "started")

        self.assertTrue(self.processes[0].terminated)
        self.assertEqual(self.supervisor.status_for(7)["pid"], self.processes[1].pid)
        self.assertEqual(self.processes[1].env["THEATER_PIN"], "4321")
        self.assertIsNone(self.supervisor.status_for(8))

    def test_stop_during_spawn_wins(self):
        def spawn_while_stopped(command, env):
            process = self.spawn(command, env)
            self.assertEqual(self.supervisor.pending_starts(), [7])
            self.assertTrue(self.supervisor.stop(7))
            return process

        self.supervisor.spawner = spawn_while_stopped
        self.assertEqual(self.supervisor.start(7, self.creds), "cancelled")

        self.assertTrue(self.processes[0].terminated)
        self.assertEqual(self.supervisor.status(), [])
        self.assertEqual(self.supervisor.pending_starts(), [])
        self.assertFalse(self.supervisor.is_healthy(7))

        # A later explicit start is not blocked by the cancelled one
        self.supervisor.spawner = self.spawn
        self.assertEqual(self.supervisor.start(7, self.creds), "started")
        self.assertEqual(len(self.processes), 2)
        self.assertFalse(self.processes[1].terminated)

    def test_start_during_cancelled_spawn_keeps_the_agent(self):
        def spawn_stop_then_start(command, env):
            process = self.spawn(command, env)
            self.supervisor.stop(7)
            self.assertEqual(self.supervisor.start(7, self.creds), "pending")
            return process

        self.supervisor.spawner = spawn_stop_then_start
        self.assertEqual(self.supervisor.start(7, self.creds), "started")
        self.assertFalse(self.processes[0].terminated)
        self.assertEqual(self.supervisor.status()[0]["pid"], self.processes[0].pid)

        # Credentials were restored by the second start, so crashes restart
        self.supervisor.notify_exit(7, 1)
        self.assertEqual(len(self.live_timers()), 1)


class TestFrames(SupervisorTestCase):
    def test_send_writes_frame_and_ack_resolves(self):
        self.supervisor.start(7, self.creds)
        future = self.supervisor.send(7, {"type": "print", "jobId": 42, "html": "<p>hi</p>"})

        self.assertEqual(self.processes[0].frames()[0]["jobId"], 42)
        self.assertFalse(future.done())

        self.supervisor.on_output(7, json.dumps({"type": "ack", "jobId": 42}))
        self.assertEqual(future.result(timeout=0), PrintAck(job_id=42, ok=True, error=None))

    def test_nack_carries_error(self):
        self.supervisor.start(7, self.creds)
        future = self.supervisor.send(7, {"type": "print", "jobId": 5})
        self.supervisor.on_output(7, json.dumps({"type": "nack", "jobId": 5, "error": "paper out"}))
        ack = future.result(timeout=0)
        self.assertFalse(ack.ok)
        self.assertEqual(ack.error, "paper out")

    def test_send_without_agent_is_unavailable(self):
        with self.assertRaises(AgentUnavailableError):
            self.supervisor.send(7, {"type": "print", "jobId": 1})

    def test_exit_fails_pending_frames(self):
        self.supervisor.start(7, self.creds)
        future = self.supervisor.send(7, {"type": "print", "jobId": 9})
        self.supervisor.notify_exit(7, 1)
        ack = future.result(timeout=0)
        self.assertFalse(ack.ok)
        self.assertIn("exited", ack.error)

    def test_abandon_drops_timed_out_waiter(self):
        self.supervisor.start(7, self.creds)
        future = self.supervisor.send(7, {"type": "print", "jobId": 11})

        self.assertTrue(self.supervisor.abandon(7, 11))
        self.assertTrue(future.cancelled())
        self.assertFalse(self.supervisor.abandon(7, 11))

        # A late ack for the abandoned job is ignored
        self.supervisor.on_output(7, json.dumps({"type": "ack", "jobId": 11}))
        self.assertTrue(self.supervisor.is_healthy(7))


class TestConfigFile(unittest.TestCase):
    def test_start_writes_agent_config(self):
        import tempfile
        from pathlib import Path

        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "pos-agent" / "config.json"
            supervisor = AgentSupervisor(
                config_path=str(path),
                backend_url="http://backend.test",
                spawner=FakeProcess,
                scheduler=lambda *a: None,
                watch_processes=False,
                base_env={},
            )
            supervisor.start(3, AgentCredentials(theater_id=3, username="a3", password="Password123", label="Lobby"))

            config = load_agent_config(path)
            self.assertEqual(config["backendUrl"], "http://backend.test")
            self.assertEqual(config["agents"][0]["theaterId"], 3)
            self.assertEqual(config["agents"][0]["label"], "Lobby")


if __name__ == "__main__":
    unittest.main()

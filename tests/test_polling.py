import asyncio
import time
import unittest

from nova_providers import JobStatus, PollPolicy, ProviderJob, ProviderTimeout, poll_until_terminal


class FakeClock:
    """Monotonic clock advanced only by the fake sleep."""
    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self):
        return self.now

    async def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


class ScriptedJob:
    """Reports ``processing`` for ``polls_before_done`` fetches, then ``final``."""
    def __init__(self, polls_before_done, final=JobStatus.SUCCEEDED, output=None):
        self.polls_before_done = polls_before_done
        self.final = final
        self.output = output
        self.calls = 0

    async def fetch(self):
        self.calls += 1
        if self.polls_before_done is not None and self.calls > self.polls_before_done:
            return ProviderJob(id="job-1", status=self.final, output=self.output)
        return ProviderJob(id="job-1", status=JobStatus.PROCESSING)


class PollingTests(unittest.IsolatedAsyncioTestCase):
    async def test_succeeds_after_n_polls(self):
        clock = FakeClock()
        script = ScriptedJob(3, output=["http://x/out.png"])
        policy = PollPolicy(interval=1.5, max_wait=60, max_attempts=10)

        job = await poll_until_terminal(script.fetch, policy, sleep=clock.sleep, clock=clock)

        self.assertEqual(job.status, JobStatus.SUCCEEDED)
        self.assertEqual(job.output, ["http://x/out.png"])
        self.assertEqual(script.calls, 4)
        self.assertEqual(clock.sleeps, [1.5, 1.5, 1.5])

    async def test_terminal_failure_is_returned_to_caller(self):
        clock = FakeClock()
        script = ScriptedJob(1, final=JobStatus.FAILED)
        job = await poll_until_terminal(script.fetch, PollPolicy(interval=1, max_wait=10), sleep=clock.sleep, clock=clock)
        self.assertEqual(job.status, JobStatus.FAILED)

    async def test_never_finishing_times_out_at_max_attempts(self):
        clock = FakeClock()
        script = ScriptedJob(None)
        policy = PollPolicy(interval=2, max_wait=1000, max_attempts=5)

        with self.assertRaises(ProviderTimeout):
            await poll_until_terminal(script.fetch, policy, sleep=clock.sleep, clock=clock)

        self.assertEqual(script.calls, 5)
        self.assertEqual(len(clock.sleeps), 4)

    async def test_never_finishing_times_out_within_wall_clock_bound(self):
        clock = FakeClock()
        script = ScriptedJob(None)
        policy = PollPolicy(interval=2.5, max_wait=10)

        with self.assertRaises(ProviderTimeout):
            await poll_until_terminal(script.fetch, policy, sleep=clock.sleep, clock=clock)

        self.assertLess(clock.now, policy.max_wait)
        self.assertEqual(clock.now, 7.5)
        self.assertEqual(script.calls, 4)

    async def test_slow_status_fetches_count_against_the_bound(self):
        clock = FakeClock()
        calls = []

        async def slow_fetch():
            calls.append(clock.now)
            clock.now += 4
            return ProviderJob(id="job-1", status=JobStatus.PROCESSING)

        policy = PollPolicy(interval=1, max_wait=10)
        with self.assertRaises(ProviderTimeout):
            await poll_until_terminal(slow_fetch, policy, sleep=clock.sleep, clock=clock)

        self.assertLessEqual(clock.now, policy.max_wait)
        self.assertEqual(calls, [0.0, 5.0])

    async def test_hanging_status_fetch_is_cut_off(self):
        async def hanging_fetch():
            await asyncio.sleep(30)

        started = time.monotonic()
        with self.assertRaises(ProviderTimeout):
            await poll_until_terminal(hanging_fetch, PollPolicy(interval=0.01, max_wait=0.2))
        self.assertLess(time.monotonic() - started, 5)

    async def test_backoff_is_capped(self):
        clock = FakeClock()
        script = ScriptedJob(4)
        policy = PollPolicy(interval=1, max_wait=100, backoff=2.0, max_interval=3)

        await poll_until_terminal(script.fetch, policy, sleep=clock.sleep, clock=clock)

        self.assertEqual(clock.sleeps, [1, 2, 3, 3])

    async def test_immediately_terminal_does_not_sleep(self):
        clock = FakeClock()
        script = ScriptedJob(0)
        await poll_until_terminal(script.fetch, PollPolicy(), sleep=clock.sleep, clock=clock)
        self.assertEqual(clock.sleeps, [])


class PolicyFromConfigTests(unittest.TestCase):
    def test_reads_config_fields(self):
        from nova_config import Config
        config = Config(poll_interval=1.2, max_poll_seconds=60, max_poll_attempts=7, poll_backoff=1.5, poll_max_interval=4)
        policy = PollPolicy.from_config(config)
        self.assertEqual((policy.interval, policy.max_wait, policy.max_attempts, policy.backoff, policy.max_interval),
                         (1.2, 60, 7, 1.5, 4))


if __name__ == "__main__":
    unittest.main()

import asyncio
import time

from chat_service.core.completion import CompletionDetector, DetectorState, QuiescencePolicy

FAST = QuiescencePolicy(initial_delay=0.03, confirm_delay=0.03, retry_delay=0.02, max_retries=5)


def _sequence(values):
    it = iter(values)

    def sample():
        return next(it)

    return sample


def _growing():
    state = {"length": 0}

    def sample():
        state["length"] += 1
        return state["length"]

    return sample


def test_default_policy_matches_forty_second_envelope():
    policy = QuiescencePolicy()

    assert (policy.initial_delay, policy.confirm_delay, policy.retry_delay, policy.max_retries) == (3.0, 2.0, 5.0, 5)
    assert policy.worst_case_latency() == 40.0


def test_quiet_buffer_completes_after_first_confirmation():
    detector = CompletionDetector(FAST, _sequence([8, 8]))

    started = time.perf_counter()
    state = asyncio.run(detector.run())
    elapsed = time.perf_counter() - started

    assert state is DetectorState.COMPLETE
    assert detector.state is DetectorState.COMPLETE
    assert detector.retries_used == 0
    assert elapsed >= FAST.initial_delay + FAST.confirm_delay - 0.005


def test_buffer_that_settles_during_retries_completes():
    detector = CompletionDetector(FAST, _sequence([1, 2, 3, 4, 5, 5]))

    state = asyncio.run(detector.run())

    assert state is DetectorState.COMPLETE
    assert detector.retries_used == 2


def test_buffer_that_never_settles_is_forced():
    detector = CompletionDetector(FAST, _growing())

    started = time.perf_counter()
    state = asyncio.run(detector.run())
    elapsed = time.perf_counter() - started

    assert state is DetectorState.FORCED_COMPLETE
    assert detector.retries_used == FAST.max_retries
    assert elapsed >= FAST.worst_case_latency() - 0.005


def test_missing_buffer_errors_without_retry():
    calls = []

    def sample():
        calls.append(1)
        return None

    detector = CompletionDetector(FAST, sample)

    assert asyncio.run(detector.run()) is DetectorState.ERRORED
    assert len(calls) == 1


def test_buffer_vanishing_between_samples_errors():
    detector = CompletionDetector(FAST, _sequence([4, None]))

    assert asyncio.run(detector.run()) is DetectorState.ERRORED


def test_cancellation_token_stops_detector_at_next_wait():
    slow = QuiescencePolicy(initial_delay=5.0, confirm_delay=5.0, retry_delay=5.0, max_retries=5)

    async def _run():
        cancelled = asyncio.Event()
        detector = CompletionDetector(slow, _growing(), cancelled)
        task = asyncio.create_task(detector.run())
        await asyncio.sleep(0.01)
        cancelled.set()
        return await asyncio.wait_for(task, timeout=1.0)

    assert asyncio.run(_run()) is DetectorState.CANCELLED


def test_pre_cancelled_token_returns_immediately():
    async def _run():
        cancelled = asyncio.Event()
        cancelled.set()
        return await CompletionDetector(QuiescencePolicy(), _growing(), cancelled).run()

    assert asyncio.run(_run()) is DetectorState.CANCELLED

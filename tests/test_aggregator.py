import threading

from chat_service.core.aggregator import StreamAggregator


def test_append_and_snapshot():
    aggregator = StreamAggregator()
    aggregator.open("s1")

    assert aggregator.append("s1", "Hi")
    assert aggregator.append("s1", " there")
    assert aggregator.snapshot("s1") == "Hi there"
    assert aggregator.length("s1") == 8


def test_append_after_close_is_noop():
    aggregator = StreamAggregator()
    aggregator.open("s1")
    aggregator.append("s1", "done")

    assert aggregator.close("s1") == "done"
    assert aggregator.append("s1", "late") is False
    assert aggregator.snapshot("s1") is None
    assert aggregator.length("s1") is None
    assert aggregator.close("s1") is None


def test_sessions_do_not_share_buffers():
    aggregator = StreamAggregator()
    aggregator.open("a")
    aggregator.open("b")

    aggregator.append("a", "alpha")
    aggregator.append("b", "beta")

    assert aggregator.snapshot("a") == "alpha"
    assert aggregator.snapshot("b") == "beta"
    assert len(aggregator) == 2


def test_concurrent_appends_are_not_lost():
    aggregator = StreamAggregator()
    aggregator.open("s1")
    lengths = []

    def writer():
        for _ in range(500):
            aggregator.append("s1", "ab")

    def reader():
        for _ in range(500):
            lengths.append(aggregator.length("s1"))

    threads = [threading.Thread(target=writer) for _ in range(4)] + [threading.Thread(target=reader)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert aggregator.length("s1") == 4 * 500 * 2
    assert len(aggregator.snapshot("s1")) == 4000
    assert lengths == sorted(lengths)

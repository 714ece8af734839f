"""
Unit tests for correlation id allocation
"""

import threading
from concurrent.futures import ThreadPoolExecutor

from ibreactor.core.ids import IdAllocator, IdCounter


class TestIdCounter:

    def test_monotonic(self):
        counter = IdCounter("request")
        assert [counter.next() for _ in range(5)] == [1, 2, 3, 4, 5]
        assert counter.current == 5

    def test_start(self):
        counter = IdCounter("ticker", start=1_000_000)
        assert counter.next() == 1_000_001

    def test_concurrent_allocation(self):
        """N concurrent allocations give N distinct ids with no gaps"""
        counter = IdCounter("request")
        threads, per_thread = 8, 1000

        def allocate(_):
            return [counter.next() for _ in range(per_thread)]

        with ThreadPoolExecutor(max_workers=threads) as pool:
            results = [i for chunk in pool.map(allocate, range(threads)) for i in chunk]

        assert len(results) == threads * per_thread
        assert sorted(results) == list(range(1, threads * per_thread + 1))

    def test_advance_past(self):
        counter = IdCounter("order")
        counter.next()
        assert counter.advance_past(100) == 101
        assert counter.next() == 101

    def test_never_moves_backwards(self):
        counter = IdCounter("order", start=50)
        counter.advance_past(10)
        assert counter.next() == 51


class TestIdAllocator:

    def test_independent_namespaces(self):
        ids = IdAllocator()
        assert ids.next_ticker_id() == 1
        assert ids.next_ticker_id() == 2
        assert ids.next_order_id() == 1
        assert ids.next_request_id() == 1

    def test_reset_order_id(self):
        """After a reset the next order id is above the server's value"""
        ids = IdAllocator()
        ids.next_order_id()
        ids.reset_order_id(500)
        assert ids.next_order_id() == 501
        assert ids.next_request_id() == 1

    def test_reset_racing_allocations(self):
        """Allocations racing a reset never hand out a value at or below it"""
        ids = IdAllocator()
        barrier = threading.Barrier(5)
        after_reset = []
        lock = threading.Lock()
        reset_done = threading.Event()

        def allocate():
            barrier.wait()
            for _ in range(500):
                was_reset = reset_done.is_set()
                value = ids.next_order_id()
                if was_reset:
                    with lock:
                        after_reset.append(value)

        def reset():
            barrier.wait()
            ids.reset_order_id(10_000)
            reset_done.set()

        workers = [threading.Thread(target=allocate) for _ in range(4)]
        workers.append(threading.Thread(target=reset))
        for worker in workers:
            worker.start()
        for worker in workers:
            worker.join()

        assert all(value > 10_000 for value in after_reset)
        assert ids.next_order_id() > 10_000

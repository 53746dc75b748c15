"""
Unit tests for the event emitter and the concurrency helpers.
"""

import threading
import unittest

from scanfusion.core.events import EventEmitter, EventType
from scanfusion.core.utils import CancellationToken, Deadline, WorkerPool, partition_range
from scanfusion.processing.exceptions import ProcessingCancelledError


class TestEventEmitter(unittest.TestCase):

    def test_callbacks_in_registration_order(self):
        emitter = EventEmitter()
        calls = []
        emitter.on(EventType.STAGE_STARTED, lambda name: calls.append(('first', name)))
        emitter.on(EventType.STAGE_STARTED, lambda name: calls.append(('second', name)))
        emitter.emit(EventType.STAGE_STARTED, "fusion")
        self.assertEqual(calls, [('first', 'fusion'), ('second', 'fusion')])

    def test_off(self):
        emitter = EventEmitter()
        calls = []
        callback = calls.append
        emitter.on(EventType.QUALITY_UPDATED, callback)
        emitter.off(EventType.QUALITY_UPDATED, callback)
        emitter.emit(EventType.QUALITY_UPDATED, {})
        self.assertEqual(calls, [])

    def test_failing_callback_does_not_block_others(self):
        emitter = EventEmitter()
        calls = []

        def broken(*args):
            raise RuntimeError("observer failure")

        emitter.on(EventType.SESSION_RESTARTED, broken)
        emitter.on(EventType.SESSION_RESTARTED, calls.append)
        emitter.emit(EventType.SESSION_RESTARTED, "abc")
        self.assertEqual(calls, ["abc"])

    def test_once(self):
        emitter = EventEmitter()
        calls = []
        emitter.once(EventType.STAGE_COMPLETED, lambda name, elapsed: calls.append(name))
        emitter.emit(EventType.STAGE_COMPLETED, "fusion", 0.1)
        emitter.emit(EventType.STAGE_COMPLETED, "reconstruction", 0.2)
        self.assertEqual(calls, ["fusion"])
        self.assertEqual(emitter.listener_count(EventType.STAGE_COMPLETED), 0)

    def test_clear(self):
        emitter = EventEmitter()
        emitter.on(EventType.STAGE_STARTED, print)
        emitter.on(EventType.STAGE_FAILED, print)
        emitter.clear(EventType.STAGE_STARTED)
        self.assertEqual(emitter.listener_count(EventType.STAGE_STARTED), 0)
        self.assertEqual(emitter.listener_count(EventType.STAGE_FAILED), 1)
        emitter.clear()
        self.assertEqual(emitter.listener_count(EventType.STAGE_FAILED), 0)


class TestCancellationAndDeadline(unittest.TestCase):

    def test_token(self):
        token = CancellationToken()
        token.check("alignment")
        token.cancel()
        self.assertTrue(token.is_cancelled)
        with self.assertRaises(ProcessingCancelledError) as ctx:
            token.check("alignment")
        self.assertEqual(ctx.exception.details['stage'], 'alignment')
        token.reset()
        self.assertFalse(token.is_cancelled)

    def test_deadline(self):
        now = [0.0]
        deadline = Deadline(5.0, clock=lambda: now[0])
        self.assertFalse(deadline.expired())
        now[0] = 6.0
        self.assertTrue(deadline.expired())
        self.assertAlmostEqual(deadline.elapsed(), 6.0)
        self.assertFalse(Deadline(None).expired())


class TestWorkerPool(unittest.TestCase):

    def test_partition_range(self):
        self.assertEqual(partition_range(10, 4), [(0, 4), (4, 8), (8, 10)])
        self.assertEqual(partition_range(0, 4), [])

    def test_results_in_chunk_order(self):
        with WorkerPool(num_workers=4, chunk_size=3) as pool:
            results = pool.map_ranges(lambda start, stop: list(range(start, stop)), 20)
        self.assertEqual([x for chunk in results for x in chunk], list(range(20)))

    def test_runs_on_several_threads(self):
        seen = set()
        lock = threading.Lock()
        barrier = threading.Barrier(2, timeout=5)

        def work(start, stop):
            with lock:
                seen.add(threading.get_ident())
            barrier.wait()
            return stop - start

        with WorkerPool(num_workers=2, chunk_size=1) as pool:
            self.assertEqual(pool.map_ranges(work, 2), [1, 1])
        self.assertEqual(len(seen), 2)

    def test_cancelled_token_stops_work(self):
        token = CancellationToken()
        token.cancel()
        with WorkerPool(num_workers=2, chunk_size=1) as pool:
            with self.assertRaises(ProcessingCancelledError):
                pool.map_ranges(lambda start, stop: stop, 4, token, stage="fusion")


if __name__ == '__main__':
    unittest.main()

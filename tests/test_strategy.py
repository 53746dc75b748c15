"""
Unit tests for the strategy state machine.
"""

import threading
import unittest

from scanfusion.core.events import EventEmitter, EventType
from scanfusion.processing.config import StrategyConfig
from scanfusion.processing.data_types import QualityMetrics, ScanningStrategy
from scanfusion.processing.quality import QualityReport
from scanfusion.processing.strategy import StrategyController

DEPTH = ScanningStrategy.DEPTH_ONLY
IMAGE = ScanningStrategy.IMAGE_ONLY
FUSED = ScanningStrategy.FUSED
RECAL = ScanningStrategy.NEEDS_RECALIBRATION


def report(source, confidence, passed=True):
    return QualityReport(source=source, metrics=QualityMetrics(), confidence=confidence, passed=passed)


def prefer_image():
    return report("depth", 0.7), report("image", 0.95)


def prefer_depth():
    return report("depth", 0.95), report("image", 0.7)


class TestStrategyController(unittest.TestCase):

    def setUp(self):
        self.emitter = EventEmitter()
        self.events = []
        self.emitter.on(EventType.STRATEGY_CHANGED, lambda e: self.events.append(('changed', e)))
        self.emitter.on(EventType.RECALIBRATION_REQUIRED, lambda e: self.events.append(('recalibrate', e)))
        self.controller = StrategyController(emitter=self.emitter, clock=lambda: 0.0)

    def test_initial_strategy(self):
        self.assertEqual(self.controller.current_strategy, DEPTH)
        self.assertEqual(self.controller.history(), [])

    def test_transition_when_margin_exceeded(self):
        event = self.controller.update(*prefer_image(), timestamp=0.0)
        self.assertIsNotNone(event)
        self.assertEqual((event.from_strategy, event.to_strategy), (DEPTH, IMAGE))
        self.assertEqual(self.controller.current_strategy, IMAGE)
        self.assertEqual(self.events, [('changed', event)])

    def test_hold_below_margin(self):
        event = self.controller.update(report("depth", 0.75), report("image", 0.9), timestamp=0.0)
        self.assertIsNone(event)
        self.assertEqual(self.controller.current_strategy, DEPTH)
        self.assertIn("margin", self.controller.last_rejection)
        self.assertEqual(self.events, [])

    def test_tie_holds_current(self):
        self.assertIsNone(self.controller.update(report("depth", 0.8), report("image", 0.8), timestamp=0.0))
        self.assertEqual(self.controller.current_strategy, DEPTH)

    def test_source_below_minimum_is_not_a_candidate(self):
        quality = self.controller.evaluate(report("depth", 0.65), report("image", 0.9))
        self.assertFalse(quality.depth_valid)
        self.assertEqual(quality.depth, 0.0)
        self.assertTrue(quality.image_valid)

    def test_failed_report_is_not_a_candidate(self):
        quality = self.controller.evaluate(report("depth", 0.9, passed=False), report("image", 0.9))
        self.assertFalse(quality.depth_valid)
        self.assertFalse(quality.fused_valid)

    def test_fused_strategy(self):
        event = self.controller.update(report("depth", 0.7), report("image", 0.7),
                                       alignment_confidence=1.0, overlap_ratio=0.5, timestamp=0.0)
        self.assertIsNotNone(event)
        self.assertEqual(event.to_strategy, FUSED)
        self.assertAlmostEqual(event.metrics.fused, 0.91)

    def test_fused_requires_overlap(self):
        quality = self.controller.evaluate(report("depth", 0.7), report("image", 0.7),
                                           alignment_confidence=1.0, overlap_ratio=0.1)
        self.assertFalse(quality.fused_valid)
        self.assertEqual(quality.fused, 0.0)

    def test_fused_requires_alignment(self):
        quality = self.controller.evaluate(report("depth", 0.9), report("image", 0.9),
                                           alignment_confidence=0.0, overlap_ratio=1.0)
        self.assertFalse(quality.fused_valid)

    def test_recalibration_when_nothing_viable(self):
        event = self.controller.update(report("depth", 0.2, passed=False), report("image", 0.1, passed=False),
                                       timestamp=0.0)
        self.assertEqual(event.to_strategy, RECAL)
        self.assertEqual(self.controller.current_strategy, RECAL)
        # STRATEGY_CHANGED is delivered before RECALIBRATION_REQUIRED
        self.assertEqual([kind for kind, _ in self.events], ['changed', 'recalibrate'])
        self.assertIs(self.events[1][1], event)

    def test_recover_from_recalibration(self):
        self.controller.update(report("depth", 0.0, passed=False), None, timestamp=0.0)
        event = self.controller.update(*prefer_depth(), timestamp=10.0)
        self.assertEqual((event.from_strategy, event.to_strategy), (RECAL, DEPTH))

    def test_oscillation_rejected(self):
        """After D->I->D->I->D, a fifth alternating transition is refused."""
        for step in range(4):
            reports = prefer_image() if step % 2 == 0 else prefer_depth()
            self.assertIsNotNone(self.controller.update(*reports, timestamp=step * 10.0))
        self.assertEqual(self.controller.current_strategy, DEPTH)

        self.assertIsNone(self.controller.update(*prefer_image(), timestamp=40.0))
        self.assertEqual(self.controller.current_strategy, DEPTH)
        self.assertIn("oscillation", self.controller.last_rejection)
        self.assertEqual(len(self.controller.history()), 4)

    def test_rate_limit(self):
        for step in range(3):
            reports = prefer_image() if step % 2 == 0 else prefer_depth()
            self.assertIsNotNone(self.controller.update(*reports, timestamp=float(step)))
        self.assertEqual(self.controller.current_strategy, IMAGE)

        self.assertIsNone(self.controller.update(*prefer_depth(), timestamp=3.0))
        self.assertIn("transitions", self.controller.last_rejection)

        # Window has passed: 8 - 2 >= 5
        event = self.controller.update(*prefer_depth(), timestamp=8.0)
        self.assertIsNotNone(event)
        self.assertEqual(event.to_strategy, DEPTH)

    def test_recalibration_bypasses_rate_limit(self):
        for step in range(3):
            reports = prefer_image() if step % 2 == 0 else prefer_depth()
            self.controller.update(*reports, timestamp=float(step))
        event = self.controller.update(report("depth", 0.1, passed=False), report("image", 0.1, passed=False),
                                       timestamp=3.0)
        self.assertIsNotNone(event)
        self.assertEqual(self.controller.current_strategy, RECAL)

    def test_history_bounded(self):
        controller = StrategyController(StrategyConfig(history_capacity=3, oscillation_window=100),
                                        clock=lambda: 0.0)
        for step in range(6):
            reports = prefer_image() if step % 2 == 0 else prefer_depth()
            controller.update(*reports, timestamp=step * 10.0)
        history = controller.history()
        self.assertEqual(len(history), 3)
        self.assertEqual(history[-1].timestamp, 50.0)

    def test_reset(self):
        self.controller.update(*prefer_image(), timestamp=0.0)
        self.controller.reset()
        self.assertEqual(self.controller.current_strategy, DEPTH)
        self.assertEqual(self.controller.history(), [])

    def test_default_clock_used_without_timestamp(self):
        ticks = iter([100.0, 200.0])
        controller = StrategyController(clock=lambda: next(ticks))
        event = controller.update(*prefer_image())
        self.assertEqual(event.timestamp, 100.0)

    def test_concurrent_updates_deliver_events_in_acceptance_order(self):
        config = StrategyConfig(rate_limit_max_transitions=10000, oscillation_window=10000,
                                history_capacity=10000)
        emitter = EventEmitter()
        delivered = []
        emitter.on(EventType.STRATEGY_CHANGED, delivered.append)
        controller = StrategyController(config, emitter=emitter, clock=lambda: 0.0)

        def worker(offset):
            for i in range(50):
                reports = prefer_image() if (i + offset) % 2 == 0 else prefer_depth()
                controller.update(*reports)

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        history = controller.history()
        self.assertEqual(delivered, history)
        for previous, current in zip(history, history[1:]):
            self.assertEqual(previous.to_strategy, current.from_strategy)


if __name__ == '__main__':
    unittest.main()

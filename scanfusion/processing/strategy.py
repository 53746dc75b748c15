"""
Hysteretic selection of the scanning strategy.

The controller scores every strategy from the latest quality reports and
switches only when the best candidate beats the current strategy by the
improvement margin, no A->B->A->B oscillation is in progress and the recent
transition rate is below the limit. Falling back to NeedsRecalibration is a
safety state and is always accepted.
"""

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, List, Optional

from ..core.events import EventEmitter, EventType
from .config import FusionConfig, StrategyConfig
from .data_types import ScanningStrategy, TransitionEvent
from .quality import QualityReport

logger = logging.getLogger(__name__)

_MARGIN_TOLERANCE = 1e-9

# Candidate order used to break ties between equal scores
_CANDIDATES = (ScanningStrategy.DEPTH_ONLY, ScanningStrategy.IMAGE_ONLY, ScanningStrategy.FUSED)


@dataclass(frozen=True)
class StrategyQuality:
    """Achievable quality of every strategy for one set of measurements."""
    depth: float = 0.0
    image: float = 0.0
    fused: float = 0.0
    depth_valid: bool = False
    image_valid: bool = False
    fused_valid: bool = False

    def quality_of(self, strategy: ScanningStrategy) -> float:
        if strategy == ScanningStrategy.DEPTH_ONLY:
            return self.depth
        if strategy == ScanningStrategy.IMAGE_ONLY:
            return self.image
        if strategy == ScanningStrategy.FUSED:
            return self.fused
        return 0.0

    def is_valid(self, strategy: ScanningStrategy) -> bool:
        if strategy == ScanningStrategy.DEPTH_ONLY:
            return self.depth_valid
        if strategy == ScanningStrategy.IMAGE_ONLY:
            return self.image_valid
        if strategy == ScanningStrategy.FUSED:
            return self.fused_valid
        return False

    @property
    def any_valid(self) -> bool:
        return self.depth_valid or self.image_valid or self.fused_valid


class StrategyController:
    """
    State machine over {DepthOnly, ImageOnly, Fused, NeedsRecalibration}.

    update() may be called from several threads; decisions, the transition
    history and event delivery are serialized by one lock, so observers see
    transitions in the order they were accepted.
    """

    def __init__(self,
                 config: Optional[StrategyConfig] = None,
                 fusion_config: Optional[FusionConfig] = None,
                 emitter: Optional[EventEmitter] = None,
                 clock: Callable[[], float] = time.monotonic,
                 initial: ScanningStrategy = ScanningStrategy.DEPTH_ONLY):
        """
        Initialize the controller.

        Args:
            config: Strategy configuration
            fusion_config: Provides the minimum overlap for fused scoring
            emitter: Event emitter for transition notifications
            clock: Monotonic time source used for the rate limit
            initial: Starting strategy
        """
        self.config = config or StrategyConfig()
        self.fusion_config = fusion_config or FusionConfig()
        self.emitter = emitter or EventEmitter()
        self._clock = clock
        self._initial = initial
        self._current = initial
        self._history: Deque[TransitionEvent] = deque(maxlen=self.config.history_capacity)
        self._lock = threading.RLock()
        self.last_quality: Optional[StrategyQuality] = None
        self.last_rejection: Optional[str] = None

    @property
    def current_strategy(self) -> ScanningStrategy:
        with self._lock:
            return self._current

    def history(self) -> List[TransitionEvent]:
        with self._lock:
            return list(self._history)

    def reset(self) -> None:
        """Clear the transition history and return to the initial strategy."""
        with self._lock:
            self._history.clear()
            self._current = self._initial
            self.last_quality = None
            self.last_rejection = None
        logger.info("Strategy controller reset")

    def evaluate(self,
                 depth: Optional[QualityReport],
                 image: Optional[QualityReport],
                 alignment_confidence: float = 0.0,
                 overlap_ratio: float = 0.0) -> StrategyQuality:
        """
        Score every strategy.

        DepthOnly and ImageOnly score their source confidence; Fused scores
        alignment_confidence * (1 - (1 - c_depth) * (1 - c_image)) scaled by
        the overlap relative to min_overlap. Invalid strategies score 0.
        """
        cfg = self.config
        depth_conf = depth.confidence if depth is not None else 0.0
        image_conf = image.confidence if image is not None else 0.0

        depth_valid = depth is not None and depth.passed and depth_conf >= cfg.min_depth_quality
        image_valid = image is not None and image.passed and image_conf >= cfg.min_image_quality

        fused = 0.0
        if depth is not None and image is not None and depth.passed and image.passed:
            combined = 1.0 - (1.0 - depth_conf) * (1.0 - image_conf)
            overlap_factor = min(1.0, max(overlap_ratio, 0.0) / self.fusion_config.min_overlap)
            fused = max(0.0, min(1.0, alignment_confidence)) * combined * overlap_factor
        fused_valid = fused >= cfg.min_fused_quality and fused > 0.0

        return StrategyQuality(
            depth=depth_conf if depth_valid else 0.0,
            image=image_conf if image_valid else 0.0,
            fused=fused if fused_valid else 0.0,
            depth_valid=depth_valid,
            image_valid=image_valid,
            fused_valid=fused_valid,
        )

    def _best_candidate(self, quality: StrategyQuality) -> ScanningStrategy:
        if not quality.any_valid:
            return ScanningStrategy.NEEDS_RECALIBRATION
        best = None
        for strategy in _CANDIDATES:
            if not quality.is_valid(strategy):
                continue
            if best is None or quality.quality_of(strategy) > quality.quality_of(best):
                best = strategy
        # Hold the current strategy on a tie
        if quality.is_valid(self._current) and quality.quality_of(self._current) >= quality.quality_of(best):
            return self._current
        return best

    def update(self,
               depth: Optional[QualityReport] = None,
               image: Optional[QualityReport] = None,
               alignment_confidence: float = 0.0,
               overlap_ratio: float = 0.0,
               timestamp: Optional[float] = None) -> Optional[TransitionEvent]:
        """
        Feed new quality measurements.

        Args:
            depth: Latest depth source report
            image: Latest image source report
            alignment_confidence: Confidence of the depth/image registration
            overlap_ratio: Fraction of the sparser source near the denser one
            timestamp: Time of the measurement (defaults to the controller clock)

        Returns:
            The accepted TransitionEvent, or None when the strategy is held
        """
        quality = self.evaluate(depth, image, alignment_confidence, overlap_ratio)
        with self._lock:
            self.last_quality = quality
            candidate = self._best_candidate(quality)
            if candidate == self._current:
                return None
            return self.request_transition(candidate, quality, timestamp)

    def request_transition(self,
                           candidate: ScanningStrategy,
                           quality: StrategyQuality,
                           timestamp: Optional[float] = None,
                           reason: str = "quality") -> Optional[TransitionEvent]:
        """Apply the hysteresis rules to a proposed transition and commit it if allowed."""
        with self._lock:
            now = self._clock() if timestamp is None else timestamp
            current = self._current
            if candidate == current:
                return None

            if candidate == ScanningStrategy.NEEDS_RECALIBRATION:
                reason = "no strategy meets its minimum quality"
            else:
                rejection = self._check_transition(current, candidate, quality, now)
                if rejection is not None:
                    self.last_rejection = rejection
                    logger.debug(f"Transition {current.value} -> {candidate.value} rejected: {rejection}")
                    return None

            event = TransitionEvent(from_strategy=current, to_strategy=candidate,
                                    timestamp=now, metrics=quality, reason=reason)
            self._history.append(event)
            self._current = candidate
            self.last_rejection = None
            logger.info(f"Strategy transition {current.value} -> {candidate.value} ({reason})")

            # Emit while holding the lock so delivery order matches acceptance order
            self.emitter.emit(EventType.STRATEGY_CHANGED, event)
            if candidate == ScanningStrategy.NEEDS_RECALIBRATION:
                logger.warning("No scanning strategy is viable, recalibration required")
                self.emitter.emit(EventType.RECALIBRATION_REQUIRED, event)
            return event

    def _check_transition(self, current: ScanningStrategy, candidate: ScanningStrategy,
                          quality: StrategyQuality, now: float) -> Optional[str]:
        gain = quality.quality_of(candidate) - quality.quality_of(current)
        if gain + _MARGIN_TOLERANCE < self.config.improvement_margin:
            return f"gain {gain:.3f} below margin {self.config.improvement_margin:.3f}"
        if self._is_oscillating(current, candidate):
            return "oscillation detected"
        recent = [e for e in self._history if now - e.timestamp < self.config.rate_limit_window]
        if len(recent) >= self.config.rate_limit_max_transitions:
            return f"{len(recent)} transitions within {self.config.rate_limit_window:.1f}s"
        return None

    def _is_oscillating(self, current: ScanningStrategy, candidate: ScanningStrategy) -> bool:
        """True when the last transitions alternate A->B->A->B and the proposal repeats the pattern."""
        window = self.config.oscillation_window
        if len(self._history) < max(window, 4):
            return False
        t0, t1, t2, t3 = list(self._history)[-4:]
        alternating = (t0.to_strategy == t2.to_strategy and
                       t1.to_strategy == t3.to_strategy and
                       t0.to_strategy != t1.to_strategy)
        return alternating and (current, candidate) == (t2.from_strategy, t2.to_strategy)

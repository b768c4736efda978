# symbols.py
#
# Turns per-frequency magnitude readings into discrete protocol symbols.
#
# Two detection strategies share one class:
#   edge        a channel fires once it has been continuously above the
#               threshold for half the minimum signal duration, then stays
#               locked until it drops out again.
#   confidence  the strongest active channel must hold its classification
#               for ~80% of the expected tone length before the symbol is
#               accepted, and overlong tones are thrown away.

import collections
import logging
from enum import Enum

from tonelink.config import ModemConfig

logger = logging.getLogger(__name__)

CHANNELS = ("zero", "one", "sync")

# Channel state for the edge detector: None = inactive, float = active since,
# _LOCKED = already reported, waiting for the channel to go quiet.
_LOCKED = "locked"


class Symbol(Enum):
    BIT0 = "0"
    BIT1 = "1"
    SYNC = "S"
    RESYNC = "R"  # zero, one and sync tones at once

    @property
    def is_bit(self):
        return self in (Symbol.BIT0, Symbol.BIT1)


CHANNEL_SYMBOLS = {"zero": Symbol.BIT0, "one": Symbol.BIT1, "sync": Symbol.SYNC}


class SymbolCandidate:
    """A classification that has been seen on consecutive samples but not yet accepted."""

    __slots__ = ("kind", "start_time", "consecutive_samples", "confidence", "emitted")

    def __init__(self, kind=None, start_time=0.0, emitted=False):
        self.kind = kind
        self.start_time = start_time
        self.consecutive_samples = 1 if kind is not None else 0
        self.confidence = 0
        self.emitted = emitted

    def duration(self, now):
        return now - self.start_time

    def __repr__(self):
        return (f"SymbolCandidate(kind={self.kind}, samples={self.consecutive_samples}, "
                f"confidence={self.confidence}, emitted={self.emitted})")


class SymbolDetector:
    """Produces at most one Symbol per call to detect()."""

    def __init__(self, config=None):
        self.config = config or ModemConfig()
        self._min_samples = {
            Symbol.BIT0: self.config.min_samples_for(self.config.bit_duration),
            Symbol.BIT1: self.config.min_samples_for(self.config.bit_duration),
            Symbol.SYNC: self.config.min_samples_for(self.config.sync_duration),
            Symbol.RESYNC: self.config.min_samples_for(self.config.marker_duration),
        }
        self.reset()

    def reset(self):
        self._history = {ch: collections.deque(maxlen=self.config.history_size) for ch in CHANNELS}
        self._active_since = dict.fromkeys(CHANNELS)
        self.candidate = SymbolCandidate()
        self.levels = dict.fromkeys(CHANNELS, 0.0)

    def smooth(self, magnitudes):
        """Weighted moving average per channel; the newest reading weighs the most."""
        levels = {}
        for ch in CHANNELS:
            history = self._history[ch]
            history.append(float(magnitudes.get(ch, 0.0)))
            n = len(history)
            total_weight = 0.0
            total = 0.0
            for i, value in enumerate(history):
                weight = (i + 1) / n
                total_weight += weight
                total += value * weight
            levels[ch] = total / total_weight
        return levels

    def is_silent(self):
        return all(level <= self.config.threshold for level in self.levels.values())

    def detect(self, magnitudes, now):
        """
        Feed one set of readings taken at time `now` (seconds).

        `magnitudes` maps "zero", "one" and "sync" to analyser levels. Returns
        the finalized Symbol, or None when nothing was decided this cycle.
        """
        self.levels = self.smooth(magnitudes)
        active = {ch: self.levels[ch] > self.config.threshold for ch in CHANNELS}
        if self.config.detector == "confidence":
            return self._detect_with_confidence(active, now)
        return self._detect_edges(active, now)

    # --- edge variant ---

    def _detect_edges(self, active, now):
        states = self._active_since
        for ch in CHANNELS:
            if not active[ch]:
                states[ch] = None
            elif states[ch] is None:
                states[ch] = now

        hold = self.config.min_signal_duration / 2

        if all(active.values()):
            pending = [states[ch] for ch in CHANNELS if states[ch] is not _LOCKED]
            if not pending:
                return None
            if now - max(pending) >= hold:
                for ch in CHANNELS:
                    states[ch] = _LOCKED
                logger.debug("Resync marker detected at %.3f", now)
                return Symbol.RESYNC
            return None

        for ch in CHANNELS:
            since = states[ch]
            if since is None or since is _LOCKED:
                continue
            if now - since >= hold:
                states[ch] = _LOCKED
                return CHANNEL_SYMBOLS[ch]
        return None

    # --- confidence variant ---

    def _classify(self, active):
        if all(active.values()):
            return Symbol.RESYNC
        lit = [ch for ch in CHANNELS if active[ch]]
        if not lit:
            return None
        return CHANNEL_SYMBOLS[max(lit, key=self.levels.get)]

    def _detect_with_confidence(self, active, now):
        kind = self._classify(active)
        candidate = self.candidate
        if kind != candidate.kind:
            candidate = self.candidate = SymbolCandidate(kind, now)
        elif kind is not None:
            candidate.consecutive_samples += 1

        if kind is None or candidate.emitted:
            return None

        if candidate.duration(now) > self.config.max_signal_duration:
            logger.info("Signal too long, discarding: %s (%.0f ms)",
                        kind.value, candidate.duration(now) * 1000)
            self.candidate = SymbolCandidate(kind, now, emitted=True)
            return None

        # Confidence only builds once the classification has been stable
        # for the minimum number of samples.
        if candidate.consecutive_samples >= self._min_samples[kind]:
            candidate.confidence += 1
            if candidate.confidence >= self.config.high_confidence:
                return self._finalize(now)
        return None

    def _finalize(self, now):
        candidate = self.candidate
        self.candidate = SymbolCandidate(candidate.kind, now, emitted=True)
        if candidate.confidence < self.config.min_confidence:
            logger.info("Low confidence symbol discarded: %s (confidence: %d)",
                        candidate.kind.value, candidate.confidence)
            return None
        logger.debug("Symbol %s received (%.0f ms, %d samples, confidence: %d)",
                     candidate.kind.value, candidate.duration(now) * 1000,
                     candidate.consecutive_samples, candidate.confidence)
        return candidate.kind

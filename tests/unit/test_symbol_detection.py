import logging

import pytest

from tonelink.config import ModemConfig
from tonelink.symbols import Symbol, SymbolDetector


def mags(zero=0.0, one=0.0, sync=0.0):
    return {"zero": zero, "one": one, "sync": sync}


def run(detector, readings, interval=0.004, start=0.0):
    """Feeds a list of readings at a fixed interval and returns the results."""
    return [detector.detect(reading, start + i * interval) for i, reading in enumerate(readings)]


class TestEdgeDetector:
    """Test cases for the edge (lockout) detection variant."""

    def setup_method(self):
        self.config = ModemConfig(history_size=1)
        self.detector = SymbolDetector(self.config)

    def test_symbol_fires_after_half_minimum_duration(self):
        """Test that a tone is reported once it has been active for MIN_SIGNAL_DURATION / 2."""
        assert self.detector.detect(mags(zero=200), 0.0) is None
        assert self.detector.detect(mags(zero=200), 0.004) is None
        assert self.detector.detect(mags(zero=200), 0.008) is Symbol.BIT0

    def test_tone_reported_only_once(self):
        """Test that a sustained tone is locked out after it has been reported."""
        results = run(self.detector, [mags(one=200)] * 50)
        assert results.count(Symbol.BIT1) == 1
        assert all(r in (None, Symbol.BIT1) for r in results)

    def test_channel_rearms_after_going_quiet(self):
        """Test that the same tone can be detected again after a silence."""
        readings = [mags(zero=200)] * 5 + [mags()] * 3 + [mags(zero=200)] * 5
        results = run(self.detector, readings)
        assert results.count(Symbol.BIT0) == 2

    def test_dropout_before_hold_time_restarts_timer(self):
        """Test that activity must be continuous; a dropout resets the start time."""
        readings = [mags(zero=200), mags(), mags(zero=200), mags(zero=200), mags(zero=200)]
        results = run(self.detector, readings)
        assert results == [None, None, None, None, Symbol.BIT0]

    def test_sync_channel(self):
        """Test that the sync frequency produces SYNC symbols."""
        results = run(self.detector, [mags(sync=180)] * 4)
        assert Symbol.SYNC in results

    def test_threshold_must_be_exceeded(self):
        """Test that a reading equal to the threshold is not active."""
        results = run(self.detector, [mags(zero=self.config.threshold)] * 20)
        assert all(r is None for r in results)

    def test_all_three_channels_signal_resync(self):
        """Test that all three tones together give a single RESYNC and no bits."""
        readings = [mags(200, 200, 200)] * 30 + [mags()] * 5
        results = run(self.detector, readings)
        assert results.count(Symbol.RESYNC) == 1
        assert Symbol.BIT0 not in results
        assert Symbol.BIT1 not in results
        assert Symbol.SYNC not in results

    def test_resync_after_staggered_rise(self):
        """Test that a marker whose tones start at slightly different times is still a RESYNC."""
        readings = [mags(sync=200)] * 4 + [mags(200, 200, 200)] * 10
        results = run(self.detector, readings)
        assert Symbol.RESYNC in results

    def test_reset_clears_channel_state(self):
        """Test that reset() re-arms locked channels."""
        run(self.detector, [mags(zero=200)] * 5)
        self.detector.reset()
        results = run(self.detector, [mags(zero=200)] * 5, start=1.0)
        assert results.count(Symbol.BIT0) == 1

    def test_silence_never_produces_symbols(self):
        """Test that a quiet channel never produces symbols."""
        results = run(self.detector, [mags(10, 20, 5)] * 1000)
        assert all(r is None for r in results)
        assert self.detector.is_silent()


class TestSmoothing:
    """Test cases for the weighted moving average."""

    def test_weighted_average_favours_recent_samples(self):
        """Test the weights 1..n of the moving average."""
        detector = SymbolDetector(ModemConfig(history_size=5))
        detector.smooth(mags(zero=0))
        levels = detector.smooth(mags(zero=300))
        # weights 0.5 and 1.0
        assert levels["zero"] == pytest.approx(200.0)

    def test_single_spike_is_damped(self):
        """Test that one loud sample after silence is attenuated."""
        detector = SymbolDetector(ModemConfig(history_size=5))
        for _ in range(4):
            detector.smooth(mags())
        levels = detector.smooth(mags(one=120))
        assert levels["one"] == pytest.approx(40.0)

    def test_history_size_one_disables_smoothing(self):
        """Test that a history of one sample passes readings straight through."""
        detector = SymbolDetector(ModemConfig(history_size=1))
        detector.smooth(mags(sync=10))
        assert detector.smooth(mags(sync=99))["sync"] == pytest.approx(99.0)


class TestConfidenceDetector:
    """Test cases for the confidence-gated detection variant."""

    def setup_method(self):
        self.config = ModemConfig(history_size=1, detector="confidence")
        self.detector = SymbolDetector(self.config)

    def test_bit_needs_most_of_the_expected_samples(self):
        """Test that a data tone is accepted after 80% of its samples plus confidence."""
        min_samples = self.config.min_samples_for(self.config.bit_duration)
        assert min_samples == 20
        results = run(self.detector, [mags(zero=200)] * 30)
        assert results.count(Symbol.BIT0) == 1
        # confidence reaches 3 two samples after the minimum
        assert results.index(Symbol.BIT0) == min_samples + 1

    def test_short_blip_is_ignored(self):
        """Test that a tone shorter than the minimum sample count is not reported."""
        readings = [mags(one=200)] * 5 + [mags()] * 20
        results = run(self.detector, readings)
        assert all(r is None for r in results)

    def test_classification_change_resets_candidate(self):
        """Test that switching frequency restarts the sample count."""
        readings = [mags(zero=200)] * 15 + [mags(one=200)] * 15
        results = run(self.detector, readings)
        assert all(r is None for r in results)
        assert self.detector.candidate.kind is Symbol.BIT1
        assert self.detector.candidate.consecutive_samples == 15

    def test_strongest_channel_wins(self):
        """Test that the loudest active channel is the one classified."""
        results = run(self.detector, [mags(zero=200, one=120)] * 30)
        assert Symbol.BIT0 in results
        assert Symbol.BIT1 not in results

    def test_sync_pulse_uses_its_own_duration(self):
        """Test that the shorter sync pulse is judged against the sync duration."""
        readings = [mags(sync=200)] * 12 + [mags()] * 5
        results = run(self.detector, readings)
        assert results.count(Symbol.SYNC) == 1

    def test_marker_is_reported_as_resync(self):
        """Test that all three tones together classify as RESYNC."""
        readings = [mags(200, 200, 200)] * 50
        results = run(self.detector, readings)
        assert results.count(Symbol.RESYNC) == 1

    def test_confidence_never_exceeds_threshold_unreported(self):
        """Test that the candidate is finalized as soon as it reaches high confidence."""
        for i in range(100):
            self.detector.detect(mags(zero=200), i * 0.004)
            assert self.detector.candidate.confidence < self.config.high_confidence

    def test_overlong_signal_is_discarded(self, caplog):
        """Test that a tone longer than MAX_SIGNAL_DURATION before acceptance is dropped."""
        config = ModemConfig(history_size=1, detector="confidence", max_signal_factor=0.5)
        detector = SymbolDetector(config)
        with caplog.at_level(logging.INFO, logger="tonelink.symbols"):
            results = run(detector, [mags(one=200)] * 60)
        assert all(r is None for r in results)
        assert "Signal too long" in caplog.text

    def test_low_confidence_symbol_is_discarded(self, caplog):
        """Test that a finalized symbol below the minimum confidence is logged and dropped."""
        config = ModemConfig(history_size=1, detector="confidence", high_confidence=1, min_confidence=2)
        detector = SymbolDetector(config)
        with caplog.at_level(logging.INFO, logger="tonelink.symbols"):
            results = run(detector, [mags(zero=200)] * 40)
        assert all(r is None for r in results)
        assert "Low confidence symbol discarded" in caplog.text

    def test_silence_never_produces_symbols(self):
        """Test that a quiet channel never produces symbols."""
        results = run(self.detector, [mags(30, 30, 30)] * 1000)
        assert all(r is None for r in results)


class TestModemConfig:
    """Test cases for protocol configuration."""

    def test_unknown_variant_rejected(self):
        """Test that an unknown detector variant raises."""
        with pytest.raises(ValueError):
            ModemConfig(detector="magic")

    def test_unknown_decode_policy_rejected(self):
        """Test that an unknown decode policy raises."""
        with pytest.raises(ValueError):
            ModemConfig(decode_policy="lenient")

    def test_overrides_skip_none(self):
        """Test that None overrides keep the preset value."""
        config = ModemConfig().with_overrides(threshold=None, bit_duration=0.2)
        assert config.threshold == ModemConfig().threshold
        assert config.bit_duration == 0.2
        assert config.max_signal_duration == pytest.approx(1.2)

    def test_protocol_presets(self):
        """Test the named protocol presets."""
        from tonelink.config import get_protocol

        enhanced = get_protocol("enhanced")
        assert enhanced.bit_duration == 1.0
        assert enhanced.detector == "confidence"
        assert get_protocol("fast", detector="confidence").detector == "confidence"
        with pytest.raises(ValueError):
            get_protocol("nope")

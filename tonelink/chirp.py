# chirp.py
#
# Detects known linear frequency sweeps ("chirps") in a live audio stream.
#
# Incoming blocks go into a ring buffer of recent audio while a rolling
# average of per-block RMS tracks the background level. Every few blocks the
# newest window is checked: if it stands far enough above the background, each
# registered template is slid across it with a normalized cross-correlation,
# and a match that is strong enough (and not too soon after the last match of
# the same template) is reported as a DetectionEvent.

import logging
import math
import threading
from collections import namedtuple

import numpy as np

from tonelink.config import ChirpConfig

logger = logging.getLogger(__name__)

DetectionEvent = namedtuple(
    "DetectionEvent",
    ["template_name", "confidence", "correlation", "snr", "timestamp", "background_energy"],
)


def generate_chirp(duration, f0, f1, sample_rate, volume=1.0, max_fade=100):
    """Linear sweep from f0 to f1 Hz with short linear fades at both ends."""
    length = int(math.floor(duration * sample_rate))
    if length <= 0:
        return np.zeros(0, dtype=np.float32)
    t = np.arange(length) / sample_rate
    phase = 2 * np.pi * (f0 * t + (f1 - f0) * t * t / (2 * duration))
    envelope = np.ones(length)
    fade = int(min(max_fade, length / 10))
    if fade > 0:
        ramp = np.arange(fade) / fade
        envelope[:fade] = ramp
        envelope[length - fade:] = ramp[::-1] + 1.0 / fade
    return (np.sin(phase) * envelope * volume).astype(np.float32)


def normalize_peak(signal):
    peak = np.max(np.abs(signal)) if len(signal) else 0.0
    if peak > 0:
        return signal / peak
    return signal


class ChirpTemplate:
    """A registered sweep. `samples` are peak-normalized; `unit` has unit RMS."""

    def __init__(self, name, duration, f0, f1, sample_rate, max_fade=100):
        self.name = name
        self.duration = duration
        self.f0 = f0
        self.f1 = f1
        self.samples = normalize_peak(generate_chirp(duration, f0, f1, sample_rate, max_fade=max_fade))
        self.samples.flags.writeable = False
        rms = np.sqrt(np.mean(self.samples.astype(np.float64) ** 2)) if self.length else 0.0
        self.unit = self.samples / rms if rms > 1e-10 else np.zeros(self.length)
        self.unit.flags.writeable = False

    @property
    def length(self):
        return len(self.samples)

    @property
    def usable(self):
        return self.length > 0 and bool(np.any(self.unit))

    def __repr__(self):
        return f"ChirpTemplate({self.name!r}, {self.f0}Hz -> {self.f1}Hz, {self.duration}s)"


class RollingAudioBuffer:
    """Fixed-capacity ring buffer; latest() returns samples oldest first."""

    def __init__(self, capacity):
        self.capacity = int(capacity)
        self._data = np.zeros(self.capacity, dtype=np.float32)
        self._head = 0  # next write position
        self.count = 0

    def __len__(self):
        return self.count

    def extend(self, block):
        block = np.asarray(block, dtype=np.float32).ravel()
        n = len(block)
        if n == 0:
            return
        if n >= self.capacity:
            self._data[:] = block[-self.capacity:]
            self._head = 0
            self.count = self.capacity
            return
        first = min(n, self.capacity - self._head)
        self._data[self._head:self._head + first] = block[:first]
        if first < n:
            self._data[:n - first] = block[first:]
        self._head = (self._head + n) % self.capacity
        self.count = min(self.capacity, self.count + n)

    def latest(self, n):
        n = min(int(n), self.count)
        start = (self._head - n) % self.capacity
        if start + n <= self.capacity:
            return self._data[start:start + n].copy()
        return np.concatenate((self._data[start:], self._data[:self._head]))

    def resize(self, capacity):
        kept = self.latest(min(self.count, capacity))
        self.capacity = int(capacity)
        self._data = np.zeros(self.capacity, dtype=np.float32)
        self._head = 0
        self.count = 0
        self.extend(kept)

    def clear(self):
        self._head = 0
        self.count = 0


class NoiseEstimate:
    """Average RMS of the last `size` blocks, over however many have been seen."""

    def __init__(self, size=100):
        self._history = np.zeros(size)
        self._pointer = 0
        self.populated = 0
        self.value = 0.0

    def update(self, block):
        block = np.asarray(block, dtype=np.float64)
        if len(block) == 0:
            return self.value
        energy = float(np.sqrt(np.mean(block * block)))
        if not math.isfinite(energy):
            return self.value
        self._history[self._pointer] = energy
        self._pointer = (self._pointer + 1) % len(self._history)
        self.populated = min(len(self._history), self.populated + 1)
        self.value = float(np.sum(self._history) / self.populated)
        return self.value

    def reset(self):
        self._history[:] = 0.0
        self._pointer = 0
        self.populated = 0
        self.value = 0.0


def sliding_correlation(signal, unit_template, step=1):
    """
    Normalized cross-correlation of a unit-RMS template against every
    `step`-th offset of `signal`.

    Each signal sub-window is scaled to unit RMS before the dot product, and
    the result is divided by the template length, so a perfect match gives 1.0.
    Silent sub-windows correlate to 0.
    """
    signal = np.asarray(signal, dtype=np.float64)
    length = len(unit_template)
    if length == 0 or len(signal) < length:
        return np.zeros(0)
    offsets = len(signal) - length + 1
    n = 1 << int(math.ceil(math.log2(len(signal) + length)))
    spectrum = np.fft.rfft(signal, n) * np.conj(np.fft.rfft(unit_template, n))
    dots = np.fft.irfft(spectrum, n)[:offsets]

    cumulative = np.concatenate(([0.0], np.cumsum(signal * signal)))
    energy = np.maximum(cumulative[length:] - cumulative[:offsets], 0.0)
    rms = np.sqrt(energy / length)

    dots = dots[::step]
    rms = rms[::step]
    correlation = np.zeros(len(dots))
    ok = rms > 1e-10
    correlation[ok] = dots[ok] / (rms[ok] * length)
    return correlation


def calculate_snr(signal, background_energy):
    signal_power = float(np.mean(np.asarray(signal, dtype=np.float64) ** 2)) if len(signal) else 0.0
    noise_power = background_energy * background_energy
    if noise_power < 1e-10:
        return 100.0
    return signal_power / noise_power


def calculate_confidence(correlation, snr):
    snr_factor = min(1.0, snr / 10.0)
    return correlation * (0.7 + 0.3 * snr_factor)


class ChirpDetector:
    """
    Streaming chirp detector. Feed it audio with ingest(); listeners registered
    with on_detection() receive DetectionEvents.

    Not thread-safe for concurrent ingest() calls. Template registration may
    happen from another thread.
    """

    def __init__(self, config=None):
        self.config = config or ChirpConfig()
        self.sample_rate = self.config.sample_rate
        self.detection_threshold = self.config.detection_threshold
        self._templates = {}
        self._lock = threading.Lock()
        self._listeners = []
        self.buffer = RollingAudioBuffer(self.config.window_size * self.config.history_factor)
        self.noise = NoiseEstimate(self.config.noise_history)
        self._last_detection = {}
        self.samples_seen = 0
        self.blocks_seen = 0

    @property
    def templates(self):
        with self._lock:
            return dict(self._templates)

    @property
    def current_time(self):
        return self.samples_seen / self.sample_rate

    def _window_for(self, template):
        return max(self.config.window_size, template.length + self.config.search_span)

    def _detection_window(self, templates):
        return max([self.config.window_size] + [self._window_for(t) for t in templates])

    def add_template(self, name, duration, f0, f1):
        template = ChirpTemplate(name, duration, f0, f1, self.sample_rate,
                                 max_fade=self.config.max_fade_samples)
        if not template.usable:
            logger.warning("Template %r has no usable samples; it will never match", name)
        with self._lock:
            if name in self._templates:
                logger.info("Replacing template %r", name)
            self._templates[name] = template
            self._last_detection.pop(name, None)
            window = self._detection_window(self._templates.values())
            needed = window * self.config.history_factor
            if needed > self.buffer.capacity:
                self.buffer.resize(needed)
        logger.info('Template "%s" added: %sHz -> %sHz (%ss, %d samples)',
                    name, f0, f1, duration, template.length)
        return template

    def remove_template(self, name):
        with self._lock:
            self._last_detection.pop(name, None)
            return self._templates.pop(name, None) is not None

    def set_threshold(self, threshold):
        self.detection_threshold = threshold

    def set_sample_rate(self, sample_rate):
        """Changes the sample rate and rebuilds every template for it."""
        if sample_rate == self.sample_rate:
            return
        self.sample_rate = sample_rate
        for template in list(self.templates.values()):
            self.add_template(template.name, template.duration, template.f0, template.f1)
        self.reset()

    def on_detection(self, callback):
        self._listeners.append(callback)

    def _notify(self, event):
        for callback in list(self._listeners):
            try:
                callback(event)
            except Exception:
                logger.exception("Error in detection callback")

    def reset(self):
        """Drops buffered audio, noise history and debounce state. Templates stay."""
        with self._lock:
            self.buffer.clear()
            self._last_detection.clear()
        self.noise.reset()
        self.samples_seen = 0
        self.blocks_seen = 0

    def ingest(self, block):
        """Adds a block of samples; returns the events detected on this call."""
        block = np.asarray(block, dtype=np.float32).ravel()
        if len(block) == 0:
            return []
        self.noise.update(block)
        self.buffer.extend(block)
        self.samples_seen += len(block)
        self.blocks_seen += 1
        if self.blocks_seen % self.config.detect_every == 0:
            return self.detect()
        return []

    def detect(self):
        """Runs one detection cycle over the newest audio."""
        with self._lock:
            templates = list(self._templates.values())
        templates = [t for t in templates if t.usable]
        if not templates:
            return []

        window = self._detection_window(templates)
        background = self.noise.value
        if len(self.buffer) < window or background < self.config.noise_floor:
            return []

        recent = self.buffer.latest(window)
        snr = calculate_snr(recent, background)
        if snr < self.config.snr_threshold:
            return []

        now = self.current_time
        events = []
        for template in templates:
            segment = recent[-self._window_for(template):]
            scores = sliding_correlation(segment, template.unit, self.config.correlation_step)
            correlation = float(np.max(np.abs(scores))) if len(scores) else 0.0
            confidence = calculate_confidence(correlation, snr)
            if confidence <= self.detection_threshold:
                continue
            last = self._last_detection.get(template.name)
            if last is not None and now - last < self.config.min_detection_gap:
                continue
            self._last_detection[template.name] = now
            event = DetectionEvent(template.name, confidence, correlation, snr, now, background)
            logger.info("Chirp detected: %s (confidence: %.3f, SNR: %.1f)",
                        template.name, confidence, snr)
            events.append(event)
            self._notify(event)
        return events

# loopback.py
#
# A virtual acoustic channel: the encoder "plays" tones into it and the
# receiver reads magnitudes back out, all on a simulated clock. Used for the
# self test and for exercising the modem without audio hardware.

import numpy as np


class LoopbackChannel:
    """
    Acts as both ToneEmitter and SpectralSampler.

    Active tones read back as `level` on the analyser scale; everything else
    reads as the absolute value of Gaussian noise with deviation `noise`.
    """

    def __init__(self, config, level=200.0, noise=0.0, tolerance=50.0, seed=None):
        self.config = config
        self.level = level
        self.noise = noise
        self.tolerance = tolerance
        self.receiver = None
        self.tones = []
        self._ticks = 0
        self._rng = np.random.default_rng(seed)

    @property
    def now(self):
        return self._ticks * self.config.sample_interval

    def attach(self, receiver):
        self.receiver = receiver

    # --- ToneEmitter ---

    def play(self, frequencies, duration, amplitude):
        start = self.now
        self.tones = [tone for tone in self.tones if tone[2] > start]
        for freq in frequencies:
            self.tones.append((freq, start, start + duration))

    def stop(self):
        now = self.now
        self.tones = [(f, s, min(e, now)) for f, s, e in self.tones]

    # --- SpectralSampler ---

    def magnitude_at(self, frequency_hz):
        now = self.now
        for freq, start, end in self.tones:
            if start <= now < end and abs(freq - frequency_hz) < self.tolerance:
                return self.level
        if self.noise > 0:
            return float(min(255.0, abs(self._rng.normal(0.0, self.noise))))
        return 0.0

    # --- clock ---

    def sleep(self, seconds):
        """Advances the clock, ticking the attached receiver. Never cancelled."""
        steps = int(round(seconds / self.config.sample_interval))
        for _ in range(steps):
            self._ticks += 1
            if self.receiver is not None:
                self.receiver.tick(self.now)
        return False

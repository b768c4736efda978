# receiver.py
#
# Periodic sampling loop: spectrum magnitudes -> symbols -> characters.

import logging
import threading
import time

from tonelink.config import ModemConfig
from tonelink.framing import FrameAssembler
from tonelink.symbols import SymbolDetector

logger = logging.getLogger(__name__)


class Receiver:
    """
    Drives a SymbolDetector and a FrameAssembler from a magnitude source.

    `sampler` only needs `magnitude_at(frequency_hz) -> float`. Call tick()
    yourself with explicit timestamps, or start() to run the loop on a thread
    every `config.sample_interval` seconds.
    """

    def __init__(self, sampler, config=None, on_text=None, on_fragment=None, clock=time.monotonic):
        self.config = config or ModemConfig()
        self.sampler = sampler
        self.clock = clock
        self.detector = SymbolDetector(self.config)
        self.assembler = FrameAssembler(self.config, on_text=on_text, on_fragment=on_fragment)
        self.samples = 0
        self._was_silent = True
        self._thread = None
        self._stop = threading.Event()

    @property
    def decoded_text(self):
        return self.assembler.decoded_text

    @property
    def receiving(self):
        return self.assembler.receiving

    def read_magnitudes(self):
        return {ch: self.sampler.magnitude_at(freq) for ch, freq in self.config.frequencies.items()}

    def tick(self, now=None):
        """One sampling cycle. Returns the symbol detected, if any."""
        if now is None:
            now = self.clock()
        self.samples += 1
        symbol = self.detector.detect(self.read_magnitudes(), now)

        silent = self.detector.is_silent()
        if silent and not self._was_silent:
            self.assembler.note_silence(now)
        self._was_silent = silent

        if symbol is not None:
            self.assembler.handle(symbol, now)
        self.assembler.poll(now)
        return symbol

    def stats(self):
        levels = self.detector.levels
        return (f"Freq0: {levels['zero']:.0f} | Freq1: {levels['one']:.0f} | "
                f"Sync: {levels['sync']:.0f} | Samples: {self.samples}")

    def reset(self):
        self.detector.reset()
        if self.assembler.receiving:
            self.assembler.end_session(self.clock())
        self._was_silent = True

    def _loop(self):
        logger.info("Listening for data...")
        while not self._stop.is_set():
            try:
                self.tick()
            except Exception:
                logger.exception("An error in the receive loop, resetting reception")
                self.reset()
            self._stop.wait(self.config.sample_interval)
        logger.info("Receiver stopped.")

    def start(self):
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="tonelink-receive", daemon=True)
        self._thread.start()

    def stop(self):
        self._stop.set()
        if self._thread is not None:
            self._thread.join()
            self._thread = None
        if self.assembler.receiving:
            self.assembler.end_session(self.clock())

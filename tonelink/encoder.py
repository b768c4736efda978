# encoder.py
#
# Text -> tone schedule -> tone emitter.
#
# Every bit goes out as a short pulse on the sync frequency followed by the
# data tone and a gap. The message is framed by markers that sound all three
# frequencies together, bounded by guard silences.

import logging
import threading
from collections import namedtuple

from tonelink.config import ModemConfig

logger = logging.getLogger(__name__)

ToneInstruction = namedtuple("ToneInstruction", ["frequencies", "duration", "gap"])
ToneInstruction.__doc__ = "Frequencies to sound together for `duration` seconds, then `gap` seconds of silence."


def text_to_bits(text):
    """8-bit ASCII, most significant bit first."""
    return "".join(format(ord(char), "08b") for char in text)


class Encoder:
    def __init__(self, config=None, emitter=None, sleep=None, on_status=None):
        self.config = config or ModemConfig()
        self.emitter = emitter
        self.on_status = on_status
        self._stop = threading.Event()
        self._sleep = sleep or self._stop.wait

    def _status(self, message, level=logging.INFO):
        logger.log(level, message)
        if self.on_status:
            self.on_status(message)

    def validate(self, text):
        """Returns a user-facing warning for unsendable text, or None."""
        text = text.strip()
        if not text:
            return "Please enter text to send"
        if len(text) > self.config.max_text_length:
            return f"Text too long (max {self.config.max_text_length} chars)"
        if not text.isascii():
            return "Only ASCII text can be sent"
        return None

    def build_schedule(self, text):
        cfg = self.config
        marker = (cfg.freq_zero, cfg.freq_one, cfg.freq_sync)
        schedule = [
            ToneInstruction((), cfg.guard_duration, 0.0),
            ToneInstruction(marker, cfg.marker_duration, cfg.gap),
        ]
        for bit in text_to_bits(text.strip()):
            data_freq = cfg.freq_one if bit == "1" else cfg.freq_zero
            schedule.append(ToneInstruction((cfg.freq_sync,), cfg.sync_duration, 0.0))
            schedule.append(ToneInstruction((data_freq,), cfg.bit_duration, cfg.gap))
        schedule.append(ToneInstruction(marker, cfg.marker_duration, 0.0))
        schedule.append(ToneInstruction((), cfg.guard_duration, 0.0))
        return schedule

    def schedule_duration(self, schedule):
        return sum(step.duration + step.gap for step in schedule)

    def transmit(self, text):
        """
        Plays `text` through the emitter. Blocks until done.

        Returns True on success, False if the text was rejected, the
        transmission was cancelled, or the emitter failed.
        """
        self._stop.clear()
        return self._transmit(text)

    def _transmit(self, text):
        warning = self.validate(text)
        if warning:
            self._status(warning, logging.WARNING)
            return False

        text = text.strip()
        self._status("Transmitting...")
        logger.info("Starting transmission: %r (%s)", text, text_to_bits(text))
        try:
            for step in self.build_schedule(text):
                if step.frequencies:
                    self.emitter.play(step.frequencies, step.duration, self.config.amplitude)
                if self._sleep(step.duration + step.gap):
                    self.emitter.stop()
                    self._status("Transmission cancelled", logging.WARNING)
                    return False
        except Exception as e:
            logger.exception("Transmission failed")
            self._status(f"Transmission failed: {e}", logging.ERROR)
            return False
        self._status("Transmission complete")
        return True

    def cancel(self):
        self._stop.set()

    def start(self, text):
        """Runs transmit() on a worker thread and returns the handle."""
        self._stop.clear()
        transmission = Transmission(self, text)
        transmission.start()
        return transmission


class Transmission:
    """A transmission in flight; cancel() abandons it before the next tone."""

    def __init__(self, encoder, text):
        self.encoder = encoder
        self.text = text
        self.result = None
        self._thread = threading.Thread(target=self._run, name="tonelink-transmit", daemon=True)

    def _run(self):
        self.result = self.encoder._transmit(self.text)

    def start(self):
        self._thread.start()

    def cancel(self):
        self.encoder.cancel()

    def wait(self, timeout=None):
        self._thread.join(timeout)
        return not self._thread.is_alive()

    @property
    def done(self):
        return not self._thread.is_alive()

# listener.py
#
# Runs a ChirpDetector on the live microphone.
#
# Detection happens inside the audio callback. Events leave the audio thread
# through a bounded queue that is never waited on, so a slow listener cannot
# stall ingestion. A supervisor thread restarts the stream when processing
# crashes.

import logging
import queue
import threading

from tonelink.chirp import ChirpDetector, generate_chirp
from tonelink.errors import AudioDeviceError, ProcessingError

logger = logging.getLogger(__name__)


class ChirpListener:
    def __init__(self, detector=None, device=None, blocksize=1024, stream_factory=None):
        self.detector = detector or ChirpDetector()
        self.config = self.detector.config
        self.device = device
        self.blocksize = blocksize
        self.stream_factory = stream_factory
        self.events = queue.Queue(maxsize=self.config.queue_size)
        self.detector.on_detection(self._post)
        self.dropped = 0
        self.restarts = 0
        self.error = None
        self._callbacks = []
        self._stream = None
        self._threads = []
        self._stop = threading.Event()
        self._fault = threading.Event()
        self._healthy = False

    @property
    def running(self):
        return self._stream is not None and not self._stop.is_set()

    def add_template(self, name, duration, f0, f1):
        return self.detector.add_template(name, duration, f0, f1)

    def set_threshold(self, threshold):
        self.detector.set_threshold(threshold)

    def on_detection(self, callback):
        self._callbacks.append(callback)

    # --- audio thread ---

    def _post(self, event):
        try:
            self.events.put_nowait(event)
        except queue.Full:
            self.dropped += 1
            logger.warning("Detection queue full, dropping %s event", event.template_name)

    def _audio_callback(self, indata, frames, time, status):
        if status:
            logger.warning("Input stream status: %s", status)
        if self._stop.is_set() or self._fault.is_set():
            return
        try:
            self.detector.ingest(indata[:, 0] if indata.ndim > 1 else indata)
            self._healthy = True
        except Exception:
            logger.exception("Chirp processor crashed, attempting to restart...")
            self._fault.set()

    # --- control threads ---

    def _dispatch_loop(self):
        while not self._stop.is_set():
            try:
                event = self.events.get(timeout=0.1)
            except queue.Empty:
                continue
            for callback in list(self._callbacks):
                try:
                    callback(event)
                except Exception:
                    logger.exception("Error in detection callback")

    def _supervise_loop(self):
        failures = 0
        while not self._stop.is_set():
            if not self._fault.wait(0.1):
                continue
            if self._stop.is_set():
                break
            if self._healthy:
                failures = 0
            failures += 1
            if failures > self.config.max_retries:
                self.error = ProcessingError(
                    f"Chirp processing failed {failures} times in a row, giving up")
                logger.error(str(self.error))
                self._stop.set()
                self._close()
                break
            self._reinitialize()

    def _reinitialize(self):
        self._close()
        if self._stop.wait(self.config.retry_delay):
            return
        self.detector.reset()
        self._healthy = False
        self._fault.clear()
        try:
            self._open()
        except AudioDeviceError as e:
            logger.error("Restart failed: %s", e)
            self._fault.set()
            return
        self.restarts += 1
        logger.info("Chirp detection restarted (%d)", self.restarts)

    def _open(self):
        factory = self.stream_factory
        if factory is None:
            from tonelink.audio import open_input_stream as factory
        self._stream = factory(self._audio_callback, self.device,
                               self.detector.sample_rate, self.blocksize)

    def _close(self):
        stream, self._stream = self._stream, None
        if stream is not None:
            try:
                stream.stop()
                stream.close()
            except Exception:
                logger.exception("Error closing input stream")

    def start(self):
        """Opens the microphone; raises AudioDeviceError if that is not possible."""
        if self.running:
            return
        self._stop.clear()
        self._fault.clear()
        self.error = None
        self._healthy = False
        self._open()
        self._threads = [
            threading.Thread(target=self._dispatch_loop, name="tonelink-chirp-dispatch", daemon=True),
            threading.Thread(target=self._supervise_loop, name="tonelink-chirp-supervisor", daemon=True),
        ]
        for thread in self._threads:
            thread.start()
        logger.info("Chirp detection started successfully")

    def stop(self):
        self._stop.set()
        self._close()
        for thread in self._threads:
            if thread is not threading.current_thread():
                thread.join()
        self._threads = []
        logger.info("Chirp detection stopped")

    def check(self):
        """Raises the ProcessingError that stopped the listener, if any."""
        if self.error is not None:
            raise self.error

    def play_test_chirp(self, emitter=None, duration=1.0, f0=100.0, f1=2000.0, volume=0.3):
        if emitter is None:
            from tonelink.audio import SoundDeviceToneEmitter
            emitter = SoundDeviceToneEmitter(self.detector.sample_rate)
        wave = generate_chirp(duration, f0, f1, self.detector.sample_rate, volume,
                              max_fade=self.config.max_fade_samples)
        emitter.play_waveform(wave)
        emitter.wait()

    def run_self_test(self, emitter=None):
        """Registers a test sweep and plays it back through the speaker."""
        if not self.running:
            self.start()
        self.add_template("self_test_chirp", 1.0, 500.0, 1500.0)
        logger.info("Playing test chirp...")
        self.play_test_chirp(emitter, 1.0, 500.0, 1500.0, 0.5)
        logger.info("Self-test completed. Check the log for detections.")

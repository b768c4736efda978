# audio.py
#
# sounddevice adapters: the microphone as a per-frequency magnitude source,
# and the speaker as a tone emitter.
#
# Dependencies:
# pip install sounddevice numpy

import logging
import threading

import numpy as np
import sounddevice as sd

from tonelink.config import SAMPLE_RATE
from tonelink.errors import AudioDeviceError, DeviceNotFoundError, MicrophonePermissionError

logger = logging.getLogger(__name__)

# Analyser scale: dBFS range mapped onto 0..255
MIN_DECIBELS = -100.0
MAX_DECIBELS = -30.0
RAMP_DURATION = 0.01  # Attack and release, seconds

_PERMISSION_HINTS = ("permission", "denied", "not permitted", "not allowed")
_MISSING_HINTS = ("no input device", "invalid device", "device unavailable",
                  "error querying device", "no such", "not found")


def classify_device_error(error):
    """Maps a PortAudio/sounddevice failure onto the tonelink error types."""
    text = str(error).lower()
    if any(hint in text for hint in _PERMISSION_HINTS):
        return MicrophonePermissionError(str(error))
    if any(hint in text for hint in _MISSING_HINTS):
        return DeviceNotFoundError(str(error))
    return AudioDeviceError(f"Failed to access microphone: {error}")


def check_input_device(device=None, sample_rate=SAMPLE_RATE):
    try:
        sd.check_input_settings(device=device, channels=1, samplerate=sample_rate)
    except (sd.PortAudioError, ValueError) as e:
        raise classify_device_error(e) from e


def open_input_stream(callback, device=None, sample_rate=SAMPLE_RATE, blocksize=0):
    """Opens and starts a mono float32 input stream, or raises AudioDeviceError."""
    check_input_device(device, sample_rate)
    try:
        stream = sd.InputStream(samplerate=sample_rate, channels=1, dtype="float32",
                                device=device, callback=callback, blocksize=blocksize)
        stream.start()
    except (sd.PortAudioError, ValueError) as e:
        raise classify_device_error(e) from e
    return stream


class SoundDeviceSampler:
    """
    Live spectrum of the microphone, queried one frequency at a time.

    The newest `fft_size` samples are Blackman-windowed, transformed,
    smoothed over time and mapped to 0..255. magnitude_at() averages the
    bins within `bin_radius` of the requested frequency.
    """

    def __init__(self, sample_rate=SAMPLE_RATE, fft_size=2048, smoothing=0.2, bin_radius=4,
                 device=None, blocksize=512):
        self.sample_rate = sample_rate
        self.fft_size = fft_size
        self.smoothing = smoothing
        self.bin_radius = bin_radius
        self.device = device
        self.blocksize = blocksize
        self.stream = None
        self._lock = threading.Lock()
        self._samples = np.zeros(fft_size, dtype=np.float32)
        self._fresh = False
        self._window = np.blackman(fft_size)
        self._smoothed = np.zeros(fft_size // 2 + 1)
        self.levels = np.zeros(fft_size // 2 + 1)

    def _audio_callback(self, indata, frames, time, status):
        if status:
            logger.warning("Input stream status: %s", status)
        self.push(indata[:, 0] if indata.ndim > 1 else indata)

    def push(self, block):
        block = np.asarray(block, dtype=np.float32)
        with self._lock:
            if len(block) >= self.fft_size:
                self._samples[:] = block[-self.fft_size:]
            else:
                self._samples = np.concatenate((self._samples[len(block):], block))
            self._fresh = True

    def _update_spectrum(self):
        with self._lock:
            if not self._fresh:
                return
            frame = self._samples.copy()
            self._fresh = False
        spectrum = np.abs(np.fft.rfft(frame * self._window)) / self.fft_size
        self._smoothed = self.smoothing * self._smoothed + (1 - self.smoothing) * spectrum
        decibels = 20 * np.log10(np.maximum(self._smoothed, 1e-12))
        scaled = (decibels - MIN_DECIBELS) / (MAX_DECIBELS - MIN_DECIBELS) * 255
        self.levels = np.clip(scaled, 0, 255)

    def frequency_to_bin(self, frequency_hz):
        return int(frequency_hz / (self.sample_rate / self.fft_size))

    def magnitude_at(self, frequency_hz):
        self._update_spectrum()
        center = self.frequency_to_bin(frequency_hz)
        lo = max(0, center - self.bin_radius)
        hi = min(len(self.levels), center + self.bin_radius + 1)
        if lo >= hi:
            return 0.0
        return float(np.mean(self.levels[lo:hi]))

    def start(self):
        if self.stream is None:
            self.stream = open_input_stream(self._audio_callback, self.device,
                                            self.sample_rate, self.blocksize)
            logger.info("Microphone open at %d Hz", self.sample_rate)

    def stop(self):
        if self.stream is not None:
            self.stream.stop()
            self.stream.close()
            self.stream = None


class SoundDeviceToneEmitter:
    """Plays sine tones (several at once if asked) with a linear attack and release."""

    def __init__(self, sample_rate=SAMPLE_RATE, device=None, ramp=RAMP_DURATION):
        self.sample_rate = sample_rate
        self.device = device
        self.ramp = ramp

    def synthesize(self, frequencies, duration, amplitude):
        n = int(self.sample_rate * duration)
        t = np.arange(n) / self.sample_rate
        wave = np.zeros(n)
        for freq in frequencies:
            wave += np.sin(2 * np.pi * freq * t)
        wave *= amplitude
        ramp = min(int(self.sample_rate * self.ramp), n // 2)
        if ramp > 0:
            envelope = np.linspace(0, 1, ramp)
            wave[:ramp] *= envelope
            wave[n - ramp:] *= envelope[::-1]
        return wave.astype(np.float32)

    def play_waveform(self, wave):
        try:
            sd.play(wave, self.sample_rate, device=self.device)
        except (sd.PortAudioError, ValueError) as e:
            raise AudioDeviceError(f"Failed to play audio: {e}") from e

    def play(self, frequencies, duration, amplitude):
        """Starts the tone and returns immediately."""
        wave = self.synthesize(frequencies, duration, amplitude)
        if len(wave):
            self.play_waveform(wave)

    def stop(self):
        sd.stop()

    def wait(self):
        sd.wait()

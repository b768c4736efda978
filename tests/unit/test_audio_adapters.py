import importlib
import sys
import types
from unittest.mock import Mock, patch

import numpy as np
import pytest

from tonelink.config import THRESHOLD
from tonelink.errors import AudioDeviceError, DeviceNotFoundError, MicrophonePermissionError


class FakePortAudioError(Exception):
    pass


def fake_sounddevice():
    """Module standing in for sounddevice on machines without PortAudio."""
    module = types.ModuleType("sounddevice")
    module.PortAudioError = FakePortAudioError
    for name in ("check_input_settings", "InputStream", "play", "stop", "wait"):
        setattr(module, name, Mock(name=name))
    return module


@pytest.fixture
def audio(monkeypatch):
    """tonelink.audio, imported against a stand-in sounddevice if the real one cannot load."""
    try:
        importlib.import_module("sounddevice")
    except (ImportError, OSError):
        monkeypatch.setitem(sys.modules, "sounddevice", fake_sounddevice())
        monkeypatch.delitem(sys.modules, "tonelink.audio", raising=False)
        module = importlib.import_module("tonelink.audio")
        monkeypatch.setitem(sys.modules, "tonelink.audio", module)
        return module
    return importlib.import_module("tonelink.audio")


@pytest.fixture
def sampler(audio):
    return audio.SoundDeviceSampler(sample_rate=44100)


@pytest.fixture
def emitter(audio):
    return audio.SoundDeviceToneEmitter(sample_rate=44100)


class TestDeviceErrors:
    """Test cases for mapping PortAudio failures onto tonelink errors."""

    @pytest.mark.parametrize("message", ["Permission denied", "Operation not permitted"])
    def test_permission(self, audio, message):
        """Test that permission failures are recognised."""
        assert isinstance(audio.classify_device_error(message), MicrophonePermissionError)

    @pytest.mark.parametrize("message", ["Error querying device -1", "No input device matching 'usb'"])
    def test_missing_device(self, audio, message):
        """Test that missing devices are recognised."""
        assert isinstance(audio.classify_device_error(message), DeviceNotFoundError)

    def test_other_failures(self, audio):
        """Test that anything else becomes a generic device error."""
        error = audio.classify_device_error("Internal PortAudio error")
        assert type(error) is AudioDeviceError
        assert str(error) == "Failed to access microphone: Internal PortAudio error"

    def test_check_input_device(self, audio):
        """Test that a failed settings check raises the classified error."""
        with patch.object(audio.sd, "check_input_settings",
                          side_effect=audio.sd.PortAudioError("Error querying device -1")):
            with pytest.raises(DeviceNotFoundError):
                audio.check_input_device(None, 44100)

    def test_open_input_stream(self, audio):
        """Test that the stream is opened mono float32 and started."""
        callback = Mock()
        with patch.object(audio.sd, "check_input_settings"), \
                patch.object(audio.sd, "InputStream") as input_stream:
            stream = audio.open_input_stream(callback, device=2, sample_rate=8000, blocksize=256)
        input_stream.assert_called_once_with(samplerate=8000, channels=1, dtype="float32",
                                             device=2, callback=callback, blocksize=256)
        assert stream is input_stream.return_value
        stream.start.assert_called_once()


class TestSoundDeviceSampler:
    """Test cases for the microphone magnitude source."""

    def test_frequency_to_bin(self, sampler):
        """Test the frequency to FFT bin mapping."""
        assert sampler.frequency_to_bin(8000) == 371
        assert sampler.frequency_to_bin(0) == 0

    def test_tone_shows_on_its_own_frequency(self, sampler):
        """Test that a played tone is above threshold only at its own frequency."""
        t = np.arange(2048) / 44100
        sampler.push(0.1 * np.sin(2 * np.pi * 8000 * t))
        assert sampler.magnitude_at(8000) > THRESHOLD
        assert sampler.magnitude_at(9000) < THRESHOLD
        assert sampler.magnitude_at(10000) < THRESHOLD

    def test_silence_reads_zero(self, sampler):
        """Test that silence maps to the bottom of the scale."""
        sampler.push(np.zeros(512))
        assert sampler.magnitude_at(8000) == 0.0

    def test_callback_takes_first_channel(self, sampler):
        """Test that the audio callback accepts (frames, channels) blocks."""
        block = np.ones((512, 2), dtype=np.float32)
        sampler._audio_callback(block, 512, None, None)
        assert np.all(sampler._samples[-512:] == 1.0)

    def test_start_and_stop(self, audio, sampler):
        """Test that start() opens the stream once and stop() closes it."""
        with patch.object(audio, "open_input_stream") as opener:
            sampler.start()
            sampler.start()
            stream = opener.return_value
            sampler.stop()
        opener.assert_called_once()
        stream.stop.assert_called_once()
        stream.close.assert_called_once()
        assert sampler.stream is None


class TestSoundDeviceToneEmitter:
    """Test cases for the speaker tone emitter."""

    def test_synthesize(self, emitter):
        """Test tone length, amplitude and ramps."""
        wave = emitter.synthesize((1000.0,), 0.1, 0.1)
        assert len(wave) == 4410
        assert wave.dtype == np.float32
        assert wave[0] == 0.0
        assert np.max(np.abs(wave)) <= 0.1 + 1e-6

    def test_marker_mixes_three_tones(self, emitter):
        """Test that several frequencies are summed."""
        wave = emitter.synthesize((8000.0, 9000.0, 10000.0), 0.2, 0.1)
        assert np.max(np.abs(wave)) > 0.1
        assert np.max(np.abs(wave)) <= 0.3 + 1e-6

    def test_play(self, audio, emitter):
        """Test that play() hands the waveform to sounddevice without blocking."""
        with patch.object(audio.sd, "play") as play:
            emitter.play((8000.0,), 0.1, 0.1)
        wave, rate = play.call_args.args
        assert len(wave) == 4410
        assert rate == 44100

    def test_play_failure(self, audio, emitter):
        """Test that a playback failure raises AudioDeviceError."""
        with patch.object(audio.sd, "play", side_effect=audio.sd.PortAudioError("device busy")):
            with pytest.raises(AudioDeviceError):
                emitter.play((8000.0,), 0.1, 0.1)

    def test_stop(self, audio, emitter):
        """Test that stop() silences playback."""
        with patch.object(audio.sd, "stop") as stop:
            emitter.stop()
        stop.assert_called_once()

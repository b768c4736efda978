# errors.py
#
# Failures that stop a session from starting or keep it from running.
# Signal-level problems (ambiguous tones, weak correlations) never raise.


class AudioDeviceError(Exception):
    """The audio device could not be opened or used."""


class MicrophonePermissionError(AudioDeviceError):
    def __init__(self, detail=""):
        message = "Microphone access denied. Please allow microphone permissions."
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


class DeviceNotFoundError(AudioDeviceError):
    def __init__(self, detail=""):
        message = "No microphone found. Please check your audio device."
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


class ProcessingError(Exception):
    """The audio processing pipeline kept failing and could not be restarted."""

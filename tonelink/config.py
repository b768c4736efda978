# config.py
#
# Protocol and detector settings for the tonelink acoustic modem.
#
# The module-level constants are the defaults; ModemConfig and ChirpConfig
# bundle them per instance so several protocol variants can run side by side.

from dataclasses import dataclass, replace

# --- Configuration ---
SAMPLE_RATE = 44100          # Samples per second

# Tone assignments (Hz)
FREQ_ZERO = 8000.0
FREQ_ONE = 9000.0
FREQ_SYNC = 10000.0

# Transmission timing (seconds)
BIT_DURATION = 0.1           # Data tone length
SYNC_DURATION = 0.05         # Clock pulse before every data tone
GAP_DURATION = 0.05          # Silence after every data tone
MARKER_DURATION = 0.2        # Start/end marker, all three tones at once
GUARD_DURATION = 0.2         # Silence bounding the whole transmission
TONE_AMPLITUDE = 0.1
MAX_TEXT_LENGTH = 50

# Detection (magnitudes are on the 0..255 analyser scale)
THRESHOLD = 50.0
SAMPLE_INTERVAL = 0.004      # Receiver tick period
MIN_SIGNAL_DURATION = 0.010
SILENCE_GAP = 0.18
HISTORY_SIZE = 5             # Samples in the weighted moving average

DETECTOR_VARIANTS = ("edge", "confidence")
DECODE_POLICIES = ("printable", "slice")

# Chirp detection
CHIRP_WINDOW_SIZE = 8192
DETECTION_THRESHOLD = 0.15
MIN_DETECTION_GAP = 0.3
SNR_THRESHOLD = 3.0
NOISE_FLOOR = 0.001
NOISE_HISTORY = 100


@dataclass(frozen=True)
class ModemConfig:
    """Frequencies, timings and thresholds for one FSK protocol variant."""
    freq_zero: float = FREQ_ZERO
    freq_one: float = FREQ_ONE
    freq_sync: float = FREQ_SYNC
    bit_duration: float = BIT_DURATION
    sync_duration: float = SYNC_DURATION
    gap: float = GAP_DURATION
    marker_duration: float = MARKER_DURATION
    guard_duration: float = GUARD_DURATION
    amplitude: float = TONE_AMPLITUDE
    max_text_length: int = MAX_TEXT_LENGTH
    threshold: float = THRESHOLD
    sample_interval: float = SAMPLE_INTERVAL
    min_signal_duration: float = MIN_SIGNAL_DURATION
    max_signal_factor: float = 6.0      # Longest accepted tone, in bit durations
    silence_gap: float = SILENCE_GAP
    history_size: int = HISTORY_SIZE
    high_confidence: int = 3
    min_confidence: int = 2
    detector: str = "edge"
    decode_policy: str = "printable"

    def __post_init__(self):
        if self.detector not in DETECTOR_VARIANTS:
            raise ValueError(f"Unknown detector variant: {self.detector!r}")
        if self.decode_policy not in DECODE_POLICIES:
            raise ValueError(f"Unknown decode policy: {self.decode_policy!r}")
        if self.sample_interval <= 0:
            raise ValueError("sample_interval must be positive")
        if self.history_size < 1:
            raise ValueError("history_size must be at least 1")

    @property
    def frequencies(self):
        return {"zero": self.freq_zero, "one": self.freq_one, "sync": self.freq_sync}

    @property
    def max_signal_duration(self):
        return self.bit_duration * self.max_signal_factor

    @property
    def samples_per_bit(self):
        return max(2, int(self.bit_duration / self.sample_interval))

    def min_samples_for(self, duration):
        """Consecutive samples needed to accept a tone of the given length (80%)."""
        expected = max(2, int(duration / self.sample_interval))
        return max(2, int(expected * 0.8))

    @property
    def session_timeout(self):
        return self.bit_duration * 3

    def with_overrides(self, **overrides):
        overrides = {k: v for k, v in overrides.items() if v is not None}
        return replace(self, **overrides)


# Named protocol variants. "enhanced" is the slow profile: one-second data
# tones on the 6/8/10 kHz plan.
PROTOCOLS = {
    "fast": ModemConfig(),
    "enhanced": ModemConfig(
        freq_zero=6000.0,
        freq_one=8000.0,
        freq_sync=10000.0,
        bit_duration=1.0,
        sync_duration=0.5,
        gap=0.25,
        marker_duration=2.0,
        detector="confidence",
    ),
}


def get_protocol(name, **overrides):
    try:
        config = PROTOCOLS[name]
    except KeyError:
        raise ValueError(f"Unknown protocol {name!r}. Choose from: {', '.join(PROTOCOLS)}") from None
    return config.with_overrides(**overrides)


@dataclass(frozen=True)
class ChirpConfig:
    """Settings for the chirp correlation detector."""
    sample_rate: int = SAMPLE_RATE
    window_size: int = CHIRP_WINDOW_SIZE
    search_span: int = CHIRP_WINDOW_SIZE // 2
    detection_threshold: float = DETECTION_THRESHOLD
    min_detection_gap: float = MIN_DETECTION_GAP
    snr_threshold: float = SNR_THRESHOLD
    noise_floor: float = NOISE_FLOOR
    noise_history: int = NOISE_HISTORY
    detect_every: int = 2
    correlation_step: int = 4
    max_fade_samples: int = 100
    history_factor: int = 4
    queue_size: int = 64
    max_retries: int = 3
    retry_delay: float = 0.5

    def __post_init__(self):
        if self.sample_rate <= 0:
            raise ValueError("sample_rate must be positive")
        if self.detect_every < 1 or self.correlation_step < 1:
            raise ValueError("detect_every and correlation_step must be at least 1")
        if self.noise_history < 1:
            raise ValueError("noise_history must be at least 1")

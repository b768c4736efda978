# framing.py
#
# Collects received bits into bytes and tracks reception sessions.
#
# A session opens on the first sync pulse (or a resync marker) and closes
# when the channel has been quiet for long enough. Bits are decoded as soon
# as a full byte is available.

import logging

from tonelink.config import ModemConfig
from tonelink.symbols import Symbol

logger = logging.getLogger(__name__)

PRINTABLE_MIN = 32
PRINTABLE_MAX = 126


class ReceptionSession:
    def __init__(self, start_time):
        self.start_time = start_time
        self.last_symbol_time = start_time

    def touch(self, now):
        self.last_symbol_time = now

    def idle_for(self, now):
        return now - self.last_symbol_time


def decode_printable(bits):
    """
    Finds the earliest 8-bit window holding a printable ASCII value.

    Returns (character, bits consumed) or (None, 0) if no window qualifies.
    """
    for offset in range(len(bits) - 7):
        value = int(bits[offset:offset + 8], 2)
        if PRINTABLE_MIN <= value <= PRINTABLE_MAX:
            return chr(value), offset + 8
    return None, 0


def decode_slice(bits):
    """Takes the first 8 bits as a byte, printable or not."""
    if len(bits) < 8:
        return None, 0
    return chr(int(bits[:8], 2)), 8


DECODERS = {
    "printable": decode_printable,
    "slice": decode_slice,
}


class FrameAssembler:
    """Idle -> Receiving on sync, back to Idle on silence timeout or resync."""

    def __init__(self, config=None, on_text=None, on_fragment=None):
        self.config = config or ModemConfig()
        self._decode = DECODERS[self.config.decode_policy]
        self.on_text = on_text
        self.on_fragment = on_fragment
        self.bit_buffer = []
        self.session = None
        self.last_silence_time = 0.0
        self.decoded_text = ""

    @property
    def receiving(self):
        return self.session is not None

    @property
    def bits(self):
        return "".join(self.bit_buffer)

    def append(self, bit):
        if bit not in ("0", "1"):
            raise ValueError(f"Not a bit: {bit!r}")
        self.bit_buffer.append(bit)

    def try_decode(self):
        """Decodes every byte currently available. Returns the characters emitted."""
        emitted = []
        while len(self.bit_buffer) >= 8:
            char, consumed = self._decode(self.bits)
            if char is None:
                break
            logger.info("Decoded character %r from %s", char,
                        "".join(self.bit_buffer[consumed - 8:consumed]))
            del self.bit_buffer[:consumed]
            emitted.append(char)
            self.decoded_text += char
            if self.on_text:
                self.on_text(char)
        return emitted

    def start_session(self, now):
        self.bit_buffer = []
        self.session = ReceptionSession(now)
        logger.info("SYNC DETECTED - Starting reception")

    def end_session(self, now):
        """Final decode attempt, then report leftovers and reset. Returns the fragment."""
        if self.session is None:
            return ""
        logger.info("Reception ended after %.0f ms. Raw bits: %s",
                    (now - self.session.start_time) * 1000, self.bits)
        self.try_decode()
        fragment = self.bits
        if fragment:
            logger.warning("Partial reception: %s (%d bits)", fragment, len(fragment))
            if self.on_fragment:
                self.on_fragment(fragment)
        self.bit_buffer = []
        self.session = None
        return fragment

    def handle(self, symbol, now):
        if symbol is Symbol.RESYNC:
            if self.session is not None:
                self.end_session(now)
            self.start_session(now)
        elif symbol is Symbol.SYNC:
            if self.session is None:
                self.start_session(now)
            else:
                self.session.touch(now)
        elif symbol.is_bit:
            if self.session is None:
                logger.debug("Bit %s outside a reception, ignored", symbol.value)
                return
            self.session.touch(now)
            self.append(symbol.value)
            self.try_decode()

    def note_silence(self, now):
        """Records the moment the channel went quiet."""
        self.last_silence_time = now

    def poll(self, now):
        """Closes the session if it has timed out. Returns True when it did."""
        if self.session is None:
            return False
        if (self.session.idle_for(now) > self.config.session_timeout
                and now - self.last_silence_time > self.config.silence_gap * 2):
            self.end_session(now)
            return True
        return False

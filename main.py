# main.py
#
# Console front end for tonelink: send text as tones, receive it back from
# the microphone, listen for chirp signatures, or run the modem through a
# simulated loopback channel.
#
# Dependencies:
# pip install sounddevice numpy

import argparse
import logging

from tonelink.chirp import ChirpDetector
from tonelink.config import PROTOCOLS, ChirpConfig, get_protocol
from tonelink.encoder import Encoder
from tonelink.errors import AudioDeviceError
from tonelink.listener import ChirpListener
from tonelink.loopback import LoopbackChannel
from tonelink.receiver import Receiver


def start_sending(config, device):
    from tonelink.audio import SoundDeviceToneEmitter

    text = input("Enter text to send: ")
    encoder = Encoder(config, SoundDeviceToneEmitter(device=device),
                      on_status=lambda message: print(f"Status: {message}"))
    warning = encoder.validate(text)
    if warning:
        print(warning)
        return
    transmission = encoder.start(text)
    print("Broadcasting... Press Enter to stop.")
    try:
        input()
    except KeyboardInterrupt:
        print("\nStopping sender.")
    transmission.cancel()
    transmission.wait()


def start_receiving(config, device):
    from tonelink.audio import SoundDeviceSampler

    sampler = SoundDeviceSampler(device=device)
    receiver = Receiver(
        sampler,
        config,
        on_text=lambda char: print(f"Received: {char!r}"),
        on_fragment=lambda bits: print(f"Partial reception: {bits} ({len(bits)} bits)"),
    )
    try:
        sampler.start()
    except AudioDeviceError as e:
        print(f"Error accessing microphone: {e}")
        return
    receiver.start()
    print("\nListening for data... Press Enter to stop.")
    try:
        input()
    except KeyboardInterrupt:
        pass
    receiver.stop()
    sampler.stop()
    print(receiver.stats())
    print(f"Decoded text: {receiver.decoded_text!r}")


def start_chirp_listener(chirp_config, device):
    listener = ChirpListener(ChirpDetector(chirp_config), device=device)
    listener.add_template("up", 1.0, 1000.0, 2000.0)
    listener.add_template("down", 1.0, 2000.0, 1000.0)
    listener.on_detection(lambda event: print(
        f"Chirp detected: {event.template_name} (confidence: {event.confidence:.3f}, "
        f"SNR: {event.snr:.1f}, t={event.timestamp:.2f}s)"))
    try:
        listener.start()
    except AudioDeviceError as e:
        print(f"Failed to start chirp detection: {e}")
        return
    print("\nListening for chirps (up: 1-2 kHz, down: 2-1 kHz)... Press Enter to stop.")
    try:
        input()
    except KeyboardInterrupt:
        pass
    listener.stop()
    if listener.error:
        print(f"Chirp detection stopped: {listener.error}")


def run_loopback(config):
    text = input("Enter text for the loopback test: ")
    channel = LoopbackChannel(config, noise=5.0)
    receiver = Receiver(channel, config, on_text=lambda char: print(char, end="", flush=True),
                        clock=lambda: channel.now)
    channel.attach(receiver)
    encoder = Encoder(config, channel, sleep=channel.sleep,
                      on_status=lambda message: print(f"\nStatus: {message}"))
    if encoder.transmit(text):
        channel.sleep(config.session_timeout + config.silence_gap * 3)
        print(f"Decoded text: {receiver.decoded_text!r}")


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Acoustic data modem and chirp detector")
    parser.add_argument("--protocol", choices=sorted(PROTOCOLS), default="fast")
    parser.add_argument("--detector", choices=["edge", "confidence"], default=None,
                        help="symbol detection strategy (default: protocol's)")
    parser.add_argument("--decode-policy", choices=["printable", "slice"], default=None)
    parser.add_argument("--threshold", type=float, default=None,
                        help="tone detection threshold on the 0-255 scale")
    parser.add_argument("--bit-duration", type=float, default=None, help="seconds per data tone")
    parser.add_argument("--chirp-threshold", type=float, default=None,
                        help="chirp detection confidence threshold")
    parser.add_argument("--min-detection-gap", type=float, default=None,
                        help="seconds between detections of the same chirp")
    parser.add_argument("--device", default=None, help="sounddevice device name or index")
    parser.add_argument("-v", "--verbose", action="store_true")
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING,
                        format="%(asctime)s [%(levelname)s] %(message)s")
    config = get_protocol(args.protocol, detector=args.detector, decode_policy=args.decode_policy,
                          threshold=args.threshold, bit_duration=args.bit_duration)
    chirp_overrides = {}
    if args.chirp_threshold is not None:
        chirp_overrides["detection_threshold"] = args.chirp_threshold
    if args.min_detection_gap is not None:
        chirp_overrides["min_detection_gap"] = args.min_detection_gap
    chirp_config = ChirpConfig(**chirp_overrides)
    device = int(args.device) if args.device and args.device.isdigit() else args.device

    print("--- Acoustic Data Modem ---")
    print(f"Protocol: {args.protocol} | Bit duration: {config.bit_duration * 1000:.0f}ms | "
          f"Samples per bit: {config.samples_per_bit}")
    while True:
        choice = input("\nChoose an option:\n1. Send text\n2. Receive data\n"
                       "3. Listen for chirps\n4. Loopback self test\n5. Exit\n> ").strip()
        if choice == '1':
            start_sending(config, device)
        elif choice == '2':
            start_receiving(config, device)
        elif choice == '3':
            start_chirp_listener(chirp_config, device)
        elif choice == '4':
            run_loopback(config)
        elif choice == '5':
            break
        else:
            print("Invalid choice. Please enter 1, 2, 3, 4 or 5.")
    print("Goodbye!")


if __name__ == '__main__':
    main()

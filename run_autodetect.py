#!/usr/bin/env python3
"""
Runbook: Scale Auto-Detection
Lists authorized ports, finds baud/framing/terminator/format and prints live
weights for the requested duration. Without hardware:

    python run_autodetect.py --fake --probe-window 0.3 --duration 20
"""

import argparse
import logging
import time

from scale_lib import protocol
from scale_lib.controller import Supervisor
from scale_lib.models import LinkConfig, StatusSnapshot, SupervisorState
from scale_lib.parsing import DecoderSettings, TelegramDecoder
from scale_lib.ports import PortAuthorization, PortWatcher, available_ports
from scale_lib.probe import ProbeEngine
from scale_lib.status import StatusReporter


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Auto-detect a serial scale and print live weights")
    parser.add_argument("--port", action="append", default=[],
                        help="Authorized serial port (repeatable). Default: all present ports")
    parser.add_argument("--duration", type=float, default=30.0,
                        help="Seconds to keep reading after startup (default: 30)")
    parser.add_argument("--probe-window", type=float, default=protocol.PROBE_WINDOW_S,
                        help=f"Listening window per candidate in seconds (default: {protocol.PROBE_WINDOW_S})")
    parser.add_argument("--scale-factor", type=float, default=protocol.DEFAULT_SCALE_FACTOR,
                        help="Multiplier for fixed-digit readings (default: 0.001, grams to kg)")
    parser.add_argument("--bare-digits-scaled", action="store_true",
                        help="Treat bare 5-digit readings as already scaled")
    parser.add_argument("--no-smoothing", action="store_true",
                        help="Disable the moving average")
    parser.add_argument("--fake", action="store_true",
                        help="Use a simulated scale at 2400 7E1 CRLF instead of a real port")
    parser.add_argument("--log-level", default="WARNING")
    return parser.parse_args()


def build_authorization(args: argparse.Namespace):
    if args.fake:
        from fakes.fake_channel import FakeAuthorization, FakeScaleChannel

        fake = FakeScaleChannel(
            name="FAKE0",
            telemetry_config=LinkConfig(2400, 7, "even", 1, protocol.CRLF),
            telegrams=("P 01250", "P 01252", "N 01249", "P 01251"),
            period_s=0.2,
        )
        return FakeAuthorization([fake])

    return PortAuthorization(allowed=args.port or available_ports())


def print_snapshot(snap: StatusSnapshot) -> None:
    if snap.state is SupervisorState.ACTIVE and snap.weight is not None:
        print(f"      [{snap.config_label}] RAW={snap.raw_line!r:<14} weight={snap.weight_text}")


def main() -> None:
    args = parse_args()
    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.WARNING),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    print("=" * 70)
    print("Scale Auto-Detection")
    print("=" * 70)
    print(f"Ports: {'simulated' if args.fake else (args.port or available_ports() or 'none present')}")
    print(f"Probe window: {args.probe_window}s")
    print(f"Duration: {args.duration}s")
    print()

    reporter = StatusReporter()
    decoder = TelegramDecoder(
        DecoderSettings(scale_factor=args.scale_factor, bare_digits_are_grams=not args.bare_digits_scaled)
    )
    supervisor = Supervisor(
        build_authorization(args),
        decoder=decoder,
        probe_engine=ProbeEngine(decoder=decoder, window_s=args.probe_window, reporter=reporter),
        reporter=reporter,
        smoothing=None if args.no_smoothing else protocol.SMOOTHING_WINDOW,
    )

    last_status = None

    def on_update(snap: StatusSnapshot) -> None:
        nonlocal last_status
        if snap.status != last_status:
            print(f"[{snap.state.value}] {snap.status}")
            last_status = snap.status

    reporter.subscribe(on_update)
    watcher = None
    if not args.fake:
        watcher = PortWatcher(supervisor.notify_connect, supervisor.notify_disconnect)

    try:
        supervisor.start()
        if watcher is not None:
            watcher.start()

        start_time = time.time()
        while time.time() - start_time < args.duration:
            time.sleep(0.5)
            print_snapshot(reporter.snapshot())

        print()
        print("Diagnostic log (newest first):")
        for entry in reporter.entries(limit=15):
            print(f"      {entry}")

        if supervisor.active_config is not None:
            print()
            print(f"✓ Detected configuration: {supervisor.active_config.label}")
        else:
            print()
            print(f"✗ No scale detected (state={supervisor.state.value})")

    finally:
        if watcher is not None:
            watcher.stop()
        supervisor.shutdown()
        print()
        print("Stopped.")
        print("=" * 70)


if __name__ == "__main__":
    main()

#!/usr/bin/env python3
"""
PPG Vitals – command-line entry point.

Usage
-----
    python main.py [OPTIONS]

Options
-------
    --camera-index INT   OpenCV camera index (default: 0)
    --video PATH         Process a recorded video instead of a camera
    --resolution WxH     Camera resolution (default: 640x480)
    --fps INT            Target frame rate (default: 30)
    --duration FLOAT     Stop after this many seconds (default: run until Ctrl-C)
    --queue-size INT     Live frame queue capacity; oldest frames are dropped
    --age / --height / --weight
                         Calibration profile for the blood-pressure model
    --reference-bp SYS/DIA
                         Reference cuff reading used to calibrate blood pressure
    --log-level LEVEL    Logging level (default: INFO)

Press a fingertip on the lens with the torch on.  One line of vitals is
printed per second.
"""

from __future__ import annotations

import argparse
import logging
import sys
import time
from pathlib import Path

from ppg_vitals.config import CalibrationProfile, PipelineConfig
from ppg_vitals.pipeline import VitalsSession
from ppg_vitals.source import FrameSource
from ppg_vitals.types import VitalsRecord

logger = logging.getLogger("ppg_vitals")


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Fingertip PPG vitals from a camera or video",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("--camera-index", type=int, default=0,
                        help="OpenCV VideoCapture index")
    parser.add_argument("--video", type=Path, default=None,
                        help="Read frames from this video file instead of a camera")
    parser.add_argument("--resolution", default="640x480",
                        help="Camera resolution, e.g. 640x480")
    parser.add_argument("--fps", type=int, default=30,
                        help="Target capture frame rate")
    parser.add_argument("--duration", type=float, default=None,
                        help="Stop after this many seconds")
    parser.add_argument("--queue-size", type=int, default=4,
                        help="Live frame queue capacity (drop-oldest)")
    parser.add_argument("--age", type=float, default=None,
                        help="Age in years (blood-pressure model)")
    parser.add_argument("--height", type=float, default=None,
                        help="Height in cm (blood-pressure model)")
    parser.add_argument("--weight", type=float, default=None,
                        help="Weight in kg (blood-pressure model)")
    parser.add_argument("--reference-bp", default=None,
                        help="Reference cuff reading SYS/DIA, e.g. 118/76")
    parser.add_argument("--log-level", default="INFO",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
                        help="Logging level")
    return parser.parse_args(argv)


def format_record(record: VitalsRecord) -> str:
    ts = time.strftime("%H:%M:%S")
    if not record.finger_present:
        return f"[{ts}] Waiting for finger…  quality={record.signal_quality:.2f}"
    if record.bpm <= 0:
        return (
            f"[{ts}] Measuring…  quality={record.signal_quality:.2f}  "
            f"progress={record.measurement_progress:.0%}"
        )
    line = (
        f"[{ts}] BPM={record.bpm:.1f}  conf={record.confidence:.2f}  "
        f"SpO2={record.spo2:.0f}%  BP={record.systolic:.0f}/{record.diastolic:.0f}  "
        f"RR={record.respiration_rate:.0f}/min  PI={record.perfusion_index:.2f}%"
    )
    if record.has_arrhythmia:
        line += f"  rhythm={record.arrhythmia_type.value}"
    if record.motion_artifact:
        line += "  [motion]"
    return line


# ---------------------------------------------------------------------------
# Main loop
# ---------------------------------------------------------------------------

def run(args: argparse.Namespace) -> int:
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(levelname)s] %(name)s – %(message)s",
        datefmt="%H:%M:%S",
    )

    try:
        res_w, res_h = (int(v) for v in args.resolution.lower().split("x"))
    except ValueError:
        logger.error("Invalid --resolution format.  Use WxH, e.g. 640x480.")
        return 1

    try:
        config = PipelineConfig(sample_rate=float(args.fps))
        profile = CalibrationProfile(age=args.age, height_cm=args.height, weight_kg=args.weight)
        reference = _parse_reference(args.reference_bp)
        session = VitalsSession(config)
        session.set_calibration(profile)
        if reference is not None:
            session.calibrate(*reference)
    except ValueError as exc:
        logger.error("Invalid configuration: %s", exc)
        return 1

    source = FrameSource(
        source=str(args.video) if args.video else args.camera_index,
        resolution=(res_w, res_h),
        fps=args.fps,
        queue_size=args.queue_size,
    )
    logger.info("Starting PPG vitals.  Press Ctrl-C to quit.")
    started = None
    last_print = float("-inf")
    try:
        with source, session:
            for frame in source.frames():
                record = session.process_frame(frame)
                if started is None:
                    started = frame.timestamp
                if frame.timestamp - last_print >= 1.0:
                    print(format_record(record))
                    last_print = frame.timestamp
                if args.duration is not None and frame.timestamp - started >= args.duration:
                    break
    except KeyboardInterrupt:
        logger.info("Interrupted.")
    except RuntimeError as exc:
        logger.error("%s", exc)
        return 1

    if source.dropped_frames:
        logger.info("Dropped %d frame(s) while processing fell behind.", source.dropped_frames)
    return 0


def _parse_reference(value: str | None) -> tuple[float, float] | None:
    if value is None:
        return None
    try:
        systolic, diastolic = (float(v) for v in value.split("/"))
    except ValueError:
        raise ValueError(f"--reference-bp must look like 120/80, got {value!r}") from None
    return systolic, diastolic


def main(argv: list[str] | None = None) -> int:
    return run(parse_args(argv))


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    sys.exit(main())

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

import numpy as np

from ptzcalib.api.pipeline import calibrate_camera
from ptzcalib.calib.refine import SolverOptions
from ptzcalib.errors import CameraEstimationError
from ptzcalib.io import load_camera, load_correspondences, save_camera, save_correspondences
from ptzcalib.sim.synthetic import look_at_pose, synthetic_rink_scene


def _run_calibrate(args: argparse.Namespace) -> int:
    try:
        cf = load_correspondences(args.correspondences)
    except (OSError, ValueError) as e:
        print(f"error: cannot read {args.correspondences}: {e}", file=sys.stderr)
        return 1

    pp = tuple(args.principal_point) if args.principal_point is not None else cf.principal_point
    if pp is None:
        print("error: --principal-point is required when the file does not carry one", file=sys.stderr)
        return 1

    init = None
    if args.init is not None:
        try:
            init = load_camera(args.init)
        except (OSError, ValueError) as e:
            print(f"error: cannot read {args.init}: {e}", file=sys.stderr)
            return 1

    options = SolverOptions(max_nfev=args.max_nfev)
    try:
        result = calibrate_camera(cf.correspondences, pp, initial_pose=init, options=options)
    except CameraEstimationError as e:
        stage = getattr(e.stage, "value", e.stage)
        print(f"error: {type(e).__name__} during {stage}: {e}", file=sys.stderr)
        return 1
    except ValueError as e:
        print(f"error: invalid correspondences: {e}", file=sys.stderr)
        return 1

    pose = result.pose
    print(f"focal_length_px: {pose.focal_length:.3f}")
    print(f"center: {np.array2string(pose.center, precision=4)}")
    print(f"rms_residual: {result.diagnostics.get('rms_residual', float('nan')):.4g}")
    if args.out is not None:
        save_camera(args.out, pose, result.diagnostics)
        print(f"Wrote {args.out}")
    return 0


def _run_synthesize(args: argparse.Namespace) -> int:
    width, height = args.image_size
    pp = (0.5 * width, 0.5 * height)
    pose = look_at_pose(
        focal_length=args.focal,
        principal_point=pp,
        center=np.asarray(args.center, dtype=np.float64),
        target=np.asarray(args.target, dtype=np.float64),
    )
    corr = synthetic_rink_scene(
        pose,
        image_size=(width, height),
        noise_px=args.noise_px,
        rng=np.random.default_rng(args.seed),
        label_conics=not args.unlabeled_conics,
    )
    save_correspondences(args.out, corr, pp)
    print(f"Wrote {args.out}")
    if args.camera_out is not None:
        save_camera(args.camera_out, pose)
        print(f"Wrote {args.camera_out}")
    return 0


def main(argv: list[str] | None = None) -> int:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("-v", "--verbose", action="store_true", help="Log debug details of every stage.")

    parser = argparse.ArgumentParser(prog="ptzcalib")
    sub = parser.add_subparsers(dest="cmd", required=True)

    cal = sub.add_parser(
        "calibrate",
        parents=[common],
        help="Estimate the camera of one frame from planar correspondences.",
    )
    cal.add_argument("correspondences", type=Path)
    cal.add_argument(
        "--principal-point",
        type=float,
        nargs=2,
        metavar=("PX", "PY"),
        default=None,
        help="Principal point in pixels (defaults to the value stored in the file).",
    )
    cal.add_argument("--init", type=Path, default=None, help="Initial camera JSON; skips the linear stage.")
    cal.add_argument("--out", type=Path, default=None, help="Write the refined camera as JSON.")
    cal.add_argument("--max-nfev", type=int, default=SolverOptions().max_nfev)

    syn = sub.add_parser("synthesize", parents=[common], help="Write a synthetic ice-rink correspondence file.")
    syn.add_argument("--out", type=Path, required=True)
    syn.add_argument("--camera-out", type=Path, default=None, help="Also write the generating camera.")
    syn.add_argument("--focal", type=float, default=1000.0)
    syn.add_argument("--center", type=float, nargs=3, metavar=("X", "Y", "Z"), default=[0.0, -35.0, 18.0])
    syn.add_argument("--target", type=float, nargs=3, metavar=("X", "Y", "Z"), default=[0.0, 0.0, 0.0])
    syn.add_argument("--image-size", type=int, nargs=2, metavar=("W", "H"), default=[1920, 1080])
    syn.add_argument("--noise-px", type=float, default=0.0)
    syn.add_argument("--unlabeled-conics", action="store_true", help="Leave conic samples unassigned.")
    syn.add_argument("--seed", type=int, default=0)

    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    if args.cmd == "calibrate":
        return _run_calibrate(args)

    if args.cmd == "synthesize":
        return _run_synthesize(args)

    raise AssertionError(f"Unhandled cmd: {args.cmd}")

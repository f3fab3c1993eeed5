"""
Command line entry point.

Usage:
    rigstitch img1.jpg img2.jpg [img3.jpg ...] [options]

Writes cam<N>.yml and cam<N>_warped.jpg for every input image into the
output directory.
"""

import argparse
import sys
from typing import List, Optional

from . import constants
from .config import (BA_COST_FUNCS, ESTIMATOR_TYPES, FEATURES_TYPES, MATCHER_TYPES,
                     WARP_TYPES, StitchConfig)
from .errors import ConfigurationError, InsufficientImagesError, StitchingError
from .pipeline import run

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CONFIG = 2
EXIT_NOT_ENOUGH_IMAGES = 3


def _str2bool(value: str) -> bool:
    if value.lower() in ('true', 'yes', '1'):
        return True
    if value.lower() in ('false', 'no', '0'):
        return False
    raise argparse.ArgumentTypeError(f"Expected a boolean, got '{value}'")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='rigstitch',
        description="Calibrate a multi-camera rig and write every camera's registered image.")
    parser.add_argument('images', nargs='*', help="Input images, in camera order")

    parser.add_argument('--try_gpu', type=_str2bool, default=constants.TRY_GPU,
                        help="Try to use GPU acceleration (default: %(default)s)")
    parser.add_argument('--work_megapix', type=float, default=constants.WORK_MEGAPIX,
                        help="Resolution for image registration step, in Mpx (default: %(default)s)")
    parser.add_argument('--features', dest='features_type', choices=FEATURES_TYPES,
                        default=constants.FEATURES_TYPE, help="Type of features (default: %(default)s)")
    parser.add_argument('--n_features', type=int, default=constants.N_FEATURES,
                        help="Keypoints kept per image, 0 for the algorithm default (default: %(default)s)")
    parser.add_argument('--matcher', dest='matcher_type', choices=MATCHER_TYPES,
                        default=constants.MATCHER_TYPE, help="Matcher used for pairwise matching")
    parser.add_argument('--range_width', type=int, default=constants.RANGE_WIDTH,
                        help="Match only images closer than this many indices (-1 for all pairs)")
    parser.add_argument('--estimator', dest='estimator_type', choices=ESTIMATOR_TYPES,
                        default=constants.ESTIMATOR_TYPE, help="Type of estimator used for transformation")
    parser.add_argument('--match_conf', type=float, default=constants.MATCH_CONF,
                        help="Confidence for feature matching step (default: %(default)s)")
    parser.add_argument('--conf_thresh', type=float, default=constants.BA_CONF_THRESH,
                        help="Threshold for two images are from the same panorama (default: %(default)s)")
    parser.add_argument('--ba', dest='ba_cost_func', choices=BA_COST_FUNCS,
                        default=constants.BA_COST_FUNC, help="Bundle adjustment cost function")
    parser.add_argument('--ba_refine_mask', default=constants.BA_REFINE_MASK,
                        help="Refinement mask 'fx,skew,ppx,aspect,ppy', 'x' to refine (default: %(default)s)")
    parser.add_argument('--wave_correct', choices=('no', 'horiz', 'vert'),
                        default=constants.WAVE_CORRECT if constants.DO_WAVE_CORRECT else 'no',
                        help="Perform wave effect correction (default: %(default)s)")
    parser.add_argument('--warp', dest='warp_type', choices=WARP_TYPES,
                        default=constants.WARP_TYPE, help="Warp surface type (default: %(default)s)")
    parser.add_argument('--seam_megapix', type=float, default=constants.SEAM_MEGAPIX,
                        help="Resolution for the auxiliary warp pass, in Mpx (default: %(default)s)")
    parser.add_argument('--compose_megapix', type=float, default=constants.COMPOSE_MEGAPIX,
                        help="Resolution for compositing step, -1 for original (default: %(default)s)")
    parser.add_argument('--output_dir', default=constants.OUTPUT_DIR,
                        help="Directory for camera records and warped images (default: %(default)s)")
    parser.add_argument('--save_masks', action='store_true',
                        help="Also write each camera's canvas mask")
    return parser


def config_from_args(args: argparse.Namespace) -> StitchConfig:
    """
    Raises:
        ConfigurationError: If any option is invalid.
    """
    return StitchConfig(
        features_type=args.features_type,
        n_features=args.n_features,
        matcher_type=args.matcher_type,
        range_width=args.range_width,
        try_gpu=args.try_gpu,
        estimator_type=args.estimator_type,
        ba_cost_func=args.ba_cost_func,
        ba_refine_mask=args.ba_refine_mask,
        conf_thresh=args.conf_thresh,
        do_wave_correct=args.wave_correct != 'no',
        wave_correct=constants.WAVE_CORRECT if args.wave_correct == 'no' else args.wave_correct,
        warp_type=args.warp_type,
        match_conf=args.match_conf,
        work_megapix=args.work_megapix,
        seam_megapix=args.seam_megapix,
        compose_megapix=args.compose_megapix,
        output_dir=args.output_dir,
        save_masks=args.save_masks,
    )


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        config = config_from_args(args)
    except ConfigurationError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_CONFIG

    if len(args.images) < 2:
        print(f"Error: Need more images (got {len(args.images)})", file=sys.stderr)
        return EXIT_NOT_ENOUGH_IMAGES

    print("--- Rig Stitching ---")
    try:
        run(args.images, config)
    except ConfigurationError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_CONFIG
    except InsufficientImagesError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_NOT_ENOUGH_IMAGES
    except StitchingError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_FAILURE

    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())

"""
Constants and default configuration values for the stitching pipeline.
"""

# Output naming (N is the 1-based camera index)
CAMERA_FILE_TEMPLATE = "cam{index}.yml"
WARPED_IMAGE_TEMPLATE = "cam{index}_warped.jpg"
WARPED_MASK_TEMPLATE = "cam{index}_warped_mask.png"

# Resolution budgets (megapixels, <= 0 means "no downscale")
WORK_MEGAPIX = 0.6  # Feature extraction resolution
SEAM_MEGAPIX = 0.1  # Auxiliary warp pass resolution
COMPOSE_MEGAPIX = -1.0  # Final output resolution
COMPOSE_RESIZE_TOLERANCE = 1e-1  # Skip resizing when compose scale is this close to 1

# Feature Extraction
FEATURES_TYPE = 'sift'  # 'sift', 'orb' or 'superpoint'
SIFT_N_FEATURES = 0  # 0 keeps every SIFT keypoint
ORB_N_FEATURES = 1500  # Maximum ORB keypoints per image
SUPERPOINT_N_FEATURES = 2048  # Maximum SuperPoint keypoints per image
N_FEATURES = 0  # Keypoint cap per image, 0 keeps the algorithm default
TRY_GPU = False  # Best-effort acceleration hint

# Pairwise Matching
MATCHER_TYPE = 'homography'  # 'homography' or 'affine'
RANGE_WIDTH = -1  # -1 matches all pairs, > 0 limits matching to nearby indices
MATCH_CONF = 0.3  # Ratio test: best < (1 - MATCH_CONF) * second best
MATCH_MIN_MATCHES = 6  # Pairs with fewer ratio-test matches are dropped
MATCH_MIN_INLIERS = 6  # Pairs with fewer geometric inliers are dropped
MATCH_CONFIDENCE_CAP = 3.0  # Confidence above this means near-identical images

# Robust Estimation
ROBUST_METHOD = 'ransac'  # 'ransac' or 'magsac'
ROBUST_THRESHOLD = 3.0  # Inlier threshold in pixels
ROBUST_CONFIDENCE = 0.995  # Required confidence level (0-1)
ROBUST_MAX_ITERS = 2000  # Maximum RANSAC iterations

# Pose Estimation
ESTIMATOR_TYPE = 'homography'  # 'homography' or 'affine'

# Bundle Adjustment
BA_COST_FUNC = 'ray'  # 'reproj', 'ray', 'affine' or 'no'
BA_REFINE_MASK = 'xxxxx'  # fx, skew, ppx, aspect, ppy ('x' = refine)
BA_CONF_THRESH = 0.75  # Pairs at or below this confidence are ignored
BUNDLE_ADJUSTMENT_MAX_ITERS = 200  # Maximum solver iterations
BUNDLE_ADJUSTMENT_FTOL = 1e-8  # Function tolerance
BUNDLE_ADJUSTMENT_XTOL = 1e-10  # Parameter tolerance
BUNDLE_ADJUSTMENT_GTOL = 1e-8  # Gradient tolerance

# Wave Correction
DO_WAVE_CORRECT = True
WAVE_CORRECT = 'horiz'  # 'horiz' or 'vert'

# Warping
WARP_TYPE = 'plane'  # 'plane', 'affine', 'cylindrical' or 'spherical'

# Persistence
ROTATION_DTYPE = 'float32'  # Precision rotations are normalized to after estimation
OUTPUT_DIR = '.'
SAVE_MASKS = False

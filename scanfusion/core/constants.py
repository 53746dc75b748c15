"""
Constants shared by all ScanFusion processing stages.

Distances are in meters unless stated otherwise.
"""

# ==================== SPATIAL INDEX CONSTANTS ====================
DEFAULT_INDEX_BACKEND = "ckdtree"
DEFAULT_KDTREE_LEAF_SIZE = 8
DEFAULT_OCTREE_CAPACITY = 8
DEFAULT_OCTREE_MAX_DEPTH = 8
BOUNDING_BOX_PADDING = 1e-6

# ==================== ALIGNMENT (ICP) CONSTANTS ====================
DEFAULT_ICP_MAX_ITERATIONS = 50
DEFAULT_ICP_CONVERGENCE_THRESHOLD = 1e-6
MIN_CORRESPONDENCES = 3

# ==================== QUALITY CONSTANTS ====================
DEFAULT_OPTIMAL_DENSITY = 100000.0  # points per cubic meter
DEFAULT_NORMAL_CONSISTENCY_K = 8
DEFAULT_NORMAL_CONSISTENCY_RADIUS = 0.02
MIN_CONSISTENCY_NEIGHBORS = 3
DEFAULT_MAX_NOISE_LEVEL = 0.005
DEFAULT_COMPLETENESS_GRID = 16
DEFAULT_MAX_ACCEPTABLE_RESIDUAL = 0.005
QUALITY_HISTORY_SIZE = 30
WEIGHT_SUM_TOLERANCE = 1e-6

# ==================== FUSION CONSTANTS ====================
DEFAULT_MAX_FUSION_DISTANCE = 0.01  # 1cm
DEFAULT_FUSION_CONFIDENCE_THRESHOLD = 0.75
DEFAULT_MIN_OVERLAP = 0.3
FIXED_DEPTH_CONFIDENCE = 0.8
FIXED_IMAGE_CONFIDENCE = 0.6

# ==================== STRATEGY CONSTANTS ====================
DEFAULT_IMPROVEMENT_MARGIN = 0.2
DEFAULT_OSCILLATION_WINDOW = 4
DEFAULT_RATE_LIMIT_WINDOW = 5.0  # seconds
DEFAULT_RATE_LIMIT_MAX_TRANSITIONS = 3
TRANSITION_HISTORY_CAPACITY = 10

# ==================== SURFACE RECONSTRUCTION CONSTANTS ====================
DEFAULT_ORIENTATION_K = 20
DEFAULT_MIN_ORIENTATION_CONFIDENCE = 0.3
DEFAULT_GRID_RESOLUTION = 64
MAX_GRID_RESOLUTION = 256
POWER_ITERATIONS = 32

# ==================== MESH REFINEMENT CONSTANTS ====================
DEFAULT_TARGET_TRIANGLES = 50000
DEFAULT_MAX_EDGE_ERROR = 1e-5
DEFAULT_FEATURE_WEIGHT = 0.8
DEGENERATE_AREA_EPSILON = 1e-12
NORMAL_LENGTH_TOLERANCE = 1e-3
TAUBIN_LAMBDA = 0.5
TAUBIN_MU = -0.53

# ==================== PREPROCESSING CONSTANTS ====================
DEFAULT_OUTLIER_NEIGHBORS = 20
DEFAULT_OUTLIER_STD = 2.0

# ==================== PERFORMANCE CONSTANTS ====================
DEFAULT_CHUNK_SIZE = 2048
DEFAULT_STAGE_BUDGET = 30.0  # seconds

# ==================== LOGGING CONSTANTS ====================
LOG_FORMAT = '%(asctime)s %(levelname)-7s [%(threadName)s] %(name)s (%(filename)s:%(lineno)d) %(message)s'
MAX_LOG_FILE_SIZE = 10 * 1024 * 1024  # 10MB
DEBUG_DIR_PREFIX = 'scanfusion_debug'

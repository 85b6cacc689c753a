"""
Constants used across the rating and finalization system.
"""

# Rating scale
MIN_RATING = 0.0
MAX_RATING = 7.0
DEFAULT_RATING = 3.0
RATING_DECIMALS = 3

# Rating model constants
K = 0.08  # Base step in rating points per match
EXPECTED_OUTCOME_KAPPA = 1.25  # Steepness of the logistic expected-outcome curve
MARGIN_MULTIPLIER_MIN = 0.85  # Closest possible match
MARGIN_MULTIPLIER_MAX = 1.20  # Blowout
MARGIN_MAX_POINT_DIFF = 10  # Avg per-set point diff that maps to MARGIN_MULTIPLIER_MAX
RELIABILITY_DAMPENING = 0.8  # Full reliability keeps 20% of the swing

# Peer feedback constants
FEEDBACK_WEIGHT = 0.02
CONSENSUS_AGREEMENT_THRESHOLD = 0.3  # |consensus| below this means "rating looks correct"
RELIABILITY_GAIN_AGREED = 6
RELIABILITY_GAIN_DISPUTED = 2
MIN_RELIABILITY = 0
MAX_RELIABILITY = 100

# Match lifecycle
PLAYERS_PER_TEAM = 2
PLAYERS_PER_MATCH = 4
FEEDBACK_WINDOW_HOURS = 24
MATCH_HISTORY_LIMIT = 30
MATCH_LIST_LIMIT = 50

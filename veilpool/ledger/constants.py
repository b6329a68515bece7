"""
Protocol constants shared by the ledger components.

All token amounts are in base units. One whole token is 10**TOKEN_DECIMALS
base units. Timestamps and durations are unix seconds.
"""

from __future__ import annotations

# =============================================================================
# Units
# =============================================================================

TOKEN_DECIMALS = 6
TOKEN_UNIT = 10 ** TOKEN_DECIMALS

U8_MAX = 2 ** 8 - 1
U16_MAX = 2 ** 16 - 1
U32_MAX = 2 ** 32 - 1
U64_MAX = 2 ** 64 - 1
I64_MIN = -(2 ** 63)
I64_MAX = 2 ** 63 - 1

BPS_DENOMINATOR = 10_000
SECONDS_PER_DAY = 86_400

# =============================================================================
# Node Registry
# =============================================================================

MIN_STAKE = 100_000 * TOKEN_UNIT  # 100_000_000_000
UNBONDING_PERIOD = 604_800  # 7 days
MIN_REPUTATION = 50
MAX_REPUTATION = 100
INITIAL_REPUTATION = 100
PROTOCOL_FEE_BPS = 2_000
DOWNTIME_SLASH_BPS = 500
MALICIOUS_SLASH_BPS = 5_000
MAX_LOCATION_LEN = 64
MAX_ADDRESS_LEN = 45

# =============================================================================
# Pricing & Access Credits
# =============================================================================

BASE_PRICE_PER_UNIT = 500_000
DEFAULT_EXPIRY_DAYS = 30
TIER_1_THRESHOLD = 100
TIER_1_DISCOUNT_BPS = 500
TIER_2_THRESHOLD = 1_000
TIER_2_DISCOUNT_BPS = 1_500
POOL_CREDIT_DAYS = 365
EXTENSION_PRORATION_DAYS = 30

# (units, price, duration_days)
MONTHLY_SUBSCRIPTION = (500, 200_000_000, 30)
QUARTERLY_SUBSCRIPTION = (1_500, 540_000_000, 90)
YEARLY_SUBSCRIPTION = (6_000, 1_920_000_000, 365)

# =============================================================================
# Sponsorship Pools
# =============================================================================

MAX_POOL_NAME_LEN = 128
MIN_ALLOCATION_UNITS = 1
AUTO_REFILL_DIVISOR = 5  # default threshold = funding / 5

# =============================================================================
# Randomized Node Selection
# =============================================================================

SEED_LEN = 32
RANDOM_VALUE_LEN = 32
MAX_SELECTION_WEIGHT = U8_MAX

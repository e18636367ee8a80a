# settlement/config/constants.py

# -----------------------------
# ORDER STATES
# -----------------------------

ORDER_STATUSES = {"pending", "confirmed", "processing", "shipped", "delivered", "cancelled", "returned"}
FULFILLED_STATUS = "delivered"
REVERSIBLE_STATUSES = {"cancelled", "returned"}

# Orders still on their way to the customer; their stored shares count as pending earnings
OPEN_ORDER_STATUSES = {"pending", "confirmed", "processing", "shipped"}

# Statuses in which stock has already been deducted from the catalog
STOCK_DEDUCTED_STATUSES = {"confirmed", "processing", "shipped", "delivered"}

ROLE_MARKETER = "marketer"
ROLE_SUPPLIER = "supplier"
ROLE_ADMIN = "admin"

# -----------------------------
# COMMISSION TIERS
# -----------------------------

# Operator-visible fallback when an order's items cannot be priced per tier
DEFAULT_MARGIN_PERCENT = "5"

# (min_price, max_price, margin_percent); last band unbounded
DEFAULT_TIER_BANDS = [
    {"min_price": "0", "max_price": "1000", "margin_percent": "10"},
    {"min_price": "1000.01", "max_price": "5000", "margin_percent": "8"},
    {"min_price": "5000.01", "max_price": "10000", "margin_percent": "6"},
    {"min_price": "10000.01", "max_price": None, "margin_percent": "5"},
]

# -----------------------------
# WALLET / WITHDRAWAL LIMITS
# -----------------------------

DEFAULT_MINIMUM_WITHDRAWAL = "100"
DEFAULT_MAXIMUM_WITHDRAWAL = "50000"
DEFAULT_WITHDRAWAL_FEE_PERCENT = "0"
DEFAULT_WITHDRAWAL_FEE_FLAT = "0"

WALLET_NUMBER_MIN_LENGTH = 10
WALLET_NUMBER_MAX_LENGTH = 20
WITHDRAWAL_NOTES_MAX_LENGTH = 500

# -----------------------------
# PRICE RECALCULATION
# -----------------------------

PRICE_CHANGE_TOLERANCE = "0.01"
RECALCULATION_PROGRESS_EVERY = 5

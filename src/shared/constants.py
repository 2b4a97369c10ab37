"""Shared constants across the application."""

# Subject line per recovery tier
RECOVERY_EMAIL_SUBJECTS = {
    "email_1hr": "You left something in your cart!",
    "email_24hr": "Still interested in your cart?",
    "email_72hr": "Last chance to complete your order!",
}

# Template names handed to the email provider (rendering happens there)
RECOVERY_EMAIL_TEMPLATES = {
    "email_1hr": "abandoned_cart_1hr",
    "email_24hr": "abandoned_cart_24hr",
    "email_72hr": "abandoned_cart_72hr",
}

# Only the later tiers may carry a discount code
PROMOTION_TIERS = ("email_24hr", "email_72hr")

# Email preference categories
PREFERENCE_TRANSACTIONAL = "transactional"
PREFERENCE_ABANDONED_CART = "abandoned_cart"
PREFERENCE_PROMOTIONAL = "promotional"
PREFERENCE_CATEGORIES = [
    PREFERENCE_TRANSACTIONAL,
    PREFERENCE_ABANDONED_CART,
    PREFERENCE_PROMOTIONAL,
    "newsletter",
    "product_updates",
]

# Greeting used when the customer's name is unknown
DEFAULT_CUSTOMER_NAME = "Customer"

# Display format for dates rendered into email templates
EMAIL_DATE_FORMAT = "%B %d, %Y at %I:%M %p"
PROMO_EXPIRY_FORMAT = "%b %d, %Y"

# Default limits
DEFAULT_LIST_LIMIT = 50
MAX_LIST_LIMIT = 200
DEFAULT_ANALYTICS_DAYS = 30
TOP_PRODUCTS_LIMIT = 10

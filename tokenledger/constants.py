"""Centralized application constants — single source of truth for hardcoded values."""

# --- Session ---
SESSION_COOKIE_NAME = "__session"
UNKNOWN_USER_DISPLAY_NAME = "Unknown User"

# --- Stripe ---
STRIPE_API_VERSION = "2024-06-20"
CUSTOMER_METADATA_USER_KEY = "userId"
RENEWAL_BILLING_REASON = "subscription_cycle"
# Statuses that block a second checkout; canceled or expired ones do not
LIVE_SUBSCRIPTION_STATUSES = frozenset({"active", "trialing", "past_due", "incomplete"})

EVENT_CHECKOUT_COMPLETED = "checkout.session.completed"
EVENT_SUBSCRIPTION_UPDATED = "customer.subscription.updated"
EVENT_SUBSCRIPTION_DELETED = "customer.subscription.deleted"
EVENT_INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"

# --- Identity provider ---
IDENTITY_USER_CREATED = "user.created"
IDENTITY_USER_UPDATED = "user.updated"
IDENTITY_USER_DELETED = "user.deleted"
SVIX_SECRET_PREFIX = "whsec_"
SVIX_SIGNATURE_VERSION = "v1"

# --- Webhook processing results ---
WEBHOOK_PROCESSED = "processed"
WEBHOOK_DUPLICATE = "duplicate"
WEBHOOK_IGNORED = "ignored"

# --- SQLite (local dev) ---
SQLITE_BUSY_TIMEOUT = 30  # seconds

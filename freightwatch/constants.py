"""Shared defaults for freightwatch."""

DEFAULT_TASK_QUEUE = "freight-delay-notifications"
DEFAULT_NAMESPACE = "default"
DEFAULT_DELAY_THRESHOLD_MINUTES = 30
DEFAULT_CUSTOMER_CONTACT = "customer@example.com"
DEFAULT_FROM_EMAIL = "noreply@freightnotifications.com"
DEFAULT_STEP_TIMEOUT_SECONDS = 60.0
# Extra time a dispatched step may spend queued or in transit
DEFAULT_DISPATCH_GRACE_SECONDS = 30.0
DEFAULT_MAX_CONCURRENT_STEPS = 10
DEFAULT_MAX_CONCURRENT_DECISIONS = 10

# Traffic condition bands, upper bounds exclusive (minutes of delay)
LIGHT_UPPER_BOUND = 15
MODERATE_UPPER_BOUND = 30
HEAVY_UPPER_BOUND = 45

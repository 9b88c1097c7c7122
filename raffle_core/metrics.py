from prometheus_client import Counter, Histogram

# Purchase metrics
PURCHASES = Counter(
    "raffle_purchases_total",
    "Purchase attempts by outcome",
    ["outcome"]  # completed, rejected, payment_failed, bookkeeping_failed, replayed
)
PURCHASE_REJECTIONS = Counter(
    "raffle_purchase_rejections_total",
    "Purchases rejected before charging",
    ["code"]
)
PAYMENT_FAILURES = Counter(
    "raffle_payment_failures_total",
    "Charges the gateway did not complete",
    ["kind"]
)
BOOKKEEPING_FAILURES = Counter(
    "raffle_bookkeeping_failures_total",
    "Charges that succeeded without a committed order"
)
TICKETS_SOLD = Counter("raffle_tickets_sold_total", "Total tickets sold")
PURCHASE_DURATION = Histogram(
    "raffle_purchase_duration_seconds",
    "Time from request to committed order",
    buckets=[0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0]
)

# Lifecycle metrics
STATUS_TRANSITIONS = Counter(
    "raffle_status_transitions_total",
    "Stored status changes applied by the scheduler",
    ["status"]
)
SCHEDULER_ERRORS = Counter(
    "raffle_scheduler_errors_total",
    "Per-raffle failures during a scheduler tick",
    ["stage"]  # status, draw, reminder
)
SCHEDULER_TICKS = Counter("raffle_scheduler_ticks_total", "Scheduler ticks executed")

# Draw metrics
DRAWS_EXECUTED = Counter("raffle_draws_executed_total", "Winners committed")
DRAWS_SKIPPED = Counter(
    "raffle_draws_skipped_total",
    "Draws that did not commit a winner",
    ["reason"]  # already_drawn, no_participants
)
DRAW_DURATION = Histogram(
    "raffle_draw_duration_seconds",
    "Time to execute a draw",
    buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 2.0]
)

# Notification metrics
NOTIFICATIONS_SENT = Counter(
    "raffle_notifications_total",
    "Notification deliveries by final outcome",
    ["type", "status"]  # receipt|winner|reminder, sent|failed
)

# Redis stream metrics
STREAM_MESSAGES_PUBLISHED = Counter(
    "raffle_stream_messages_published_total",
    "Messages published to Redis streams",
    ["stream"]
)

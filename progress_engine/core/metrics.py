"""Business metrics exported next to the HTTP instrumentation."""

from prometheus_client import Counter

EVENTS_APPLIED = Counter(
    "progress_events_total",
    "Activity events processed by the progress store",
    ["kind", "outcome"],
)

XP_AWARDED = Counter(
    "progress_xp_awarded_total",
    "XP granted to users",
    ["kind"],
)

BADGES_UNLOCKED = Counter(
    "progress_badges_unlocked_total",
    "Badges unlocked",
    ["badge_id"],
)

RECONCILIATIONS = Counter(
    "progress_reconciliations_total",
    "Per-user reconciliation passes",
    ["outcome"],
)

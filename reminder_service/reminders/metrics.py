from prometheus_client import Counter, Gauge


scheduler_scans_total = Counter(
    "reminder_scheduler_scans_total",
    "Total scheduler scan cycles",
)

scheduler_scan_aborted_total = Counter(
    "reminder_scheduler_scan_aborted_total",
    "Scan cycles abandoned because the store was unavailable",
)

reminders_claimed_total = Counter(
    "reminders_claimed_total",
    "Total occurrences claimed by this process",
)

reminders_claim_conflicts_total = Counter(
    "reminders_claim_conflicts_total",
    "Claims lost to another worker",
)

reminders_dispatch_success_total = Counter(
    "reminders_dispatch_success_total",
    "Total successful dispatches",
    ["channel"],
)

reminders_dispatch_failed_total = Counter(
    "reminders_dispatch_failed_total",
    "Total failed dispatches",
    ["channel", "kind"],
)

reminders_deactivated_total = Counter(
    "reminders_deactivated_total",
    "Reminders deactivated by the scanner",
    ["outcome"],
)

reminders_stale_claims_released_total = Counter(
    "reminders_stale_claims_released_total",
    "Claims returned to pending after a worker died mid-dispatch",
)

scheduler_last_cycle_timestamp = Gauge(
    "reminder_scheduler_last_cycle_timestamp_seconds",
    "Unix time of the last completed scan cycle",
)

"""Google Calendar reconciliation for member schedules."""

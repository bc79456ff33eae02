"""Clinical threshold alerting: rule evaluation, deduplication, and alert workflow."""

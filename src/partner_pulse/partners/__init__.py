"""Partner-level helpers."""

from partner_pulse.partners.status import StatusBucket, find_unmapped_statuses, get_status_bucket

__all__ = ["StatusBucket", "find_unmapped_statuses", "get_status_bucket"]

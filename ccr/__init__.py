"""Config Change Reconciler (CCR).

Single-node control loop that demonstrates:
 - versioned configuration entries (plain and sensitive)
 - drift detection between stored config and running replicas
 - zero-downtime rolling replacement in bounded batches
 - automatic rollback to the last good configuration

The implementation is intentionally small so it can be audited and explained.
"""

"""
Billing Batch -- recurring invoice generation, scan scheduling, and delivery.

Import the orchestrator from ``billing_batch.orchestrator``; this package
root stays import-light so the kernel can use ``billing_batch.domain``.
"""

"""Pure batch-layer domain: schedule calculator and result types."""

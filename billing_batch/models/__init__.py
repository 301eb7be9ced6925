"""ORM models for the batch layer."""

from billing_batch.models.schedule import JobScheduleModel

__all__ = ["JobScheduleModel"]

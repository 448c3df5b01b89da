"""Failure classification, retry, health monitoring, and failed-job recovery.

Two retry loops live here:

- ``retry.with_retry`` retries inside one attempt, with backoff, for failures
  the classifier considers transient.
- ``controller.JobRetryController`` decides whether a job that has already
  failed may start a new attempt at all, capped by the job's persisted
  retry_count, with an operator force-retry that resets the cap.
"""

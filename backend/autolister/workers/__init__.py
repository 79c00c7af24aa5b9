"""
Background workers for the listing service.

Workers:
- aspect_review_worker: reviews pending aspect misses every ASPECT_REVIEW_INTERVAL_SECONDS
- correlation_worker: processes correlation jobs and reports jobs stuck in processing
"""

from autolister.workers.aspect_review_worker import run_aspect_review_loop, run_aspect_review_once
from autolister.workers.correlation_worker import run_correlation_job, run_stale_job_monitor_loop

"""Celery configuration from environment variables."""

import os

from celery.schedules import crontab

# Broker and backend (Redis)
broker_url = os.getenv("CELERY_BROKER_URL", "redis://localhost:6379/0")
result_backend = os.getenv("CELERY_RESULT_BACKEND", "redis://localhost:6379/0")

# Serialization
task_serializer = "json"
result_serializer = "json"
accept_content = ["json"]

# Timezone
timezone = "UTC"
enable_utc = True

# Task settings
task_track_started = True
task_time_limit = 600  # a sync is one fetch plus one transaction
task_soft_time_limit = 540

# Retry settings
task_default_retry_delay = 60
task_max_retries = 3

# Queue settings
task_default_queue = "default"
task_queues = {
    "default": {},
    "sync": {},
}

# Beat schedule (periodic tasks)
beat_schedule = {
    "dispatch-manifest-syncs": {
        "task": "depsera.workers.tasks.dispatch_manifest_syncs",
        "schedule": 300.0,
        "options": {"queue": "default"},
    },
    "run-manifest-retention": {
        "task": "depsera.workers.tasks.run_manifest_retention",
        "schedule": crontab(hour=3, minute=15),
        "options": {"queue": "default"},
    },
}

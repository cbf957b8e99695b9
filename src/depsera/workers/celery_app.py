"""Celery application factory and instance."""

from celery import Celery


def create_celery_app() -> Celery:
    """Create and configure the Celery application."""
    app = Celery("depsera")

    app.config_from_object("depsera.workers.config")
    app.autodiscover_tasks(["depsera.workers"])

    return app


celery_app = create_celery_app()

# Exposed for the celery CLI (-A depsera.workers.celery_app)
app = celery_app

"""Celery application setup for queued segment refreshes."""

from __future__ import annotations

from celery import Celery

from loyalty_engine.core.settings import Settings, settings


def _resolve_backend_url(config: Settings) -> str:
    if config.celery_result_backend:
        return config.celery_result_backend
    return config.redis_url


def _resolve_broker_url(config: Settings) -> str:
    if config.celery_broker_url:
        return config.celery_broker_url
    return config.redis_url


def create_celery_app(config: Settings) -> Celery:
    app = Celery(
        "loyalty_engine",
        broker=_resolve_broker_url(config),
        backend=_resolve_backend_url(config),
    )
    app.conf.update(
        task_default_queue=config.celery_default_queue,
        timezone="UTC",
        broker_connection_retry_on_startup=True,
        task_acks_late=True,
        worker_prefetch_multiplier=1,
        worker_concurrency=config.job_queue_concurrency,
    )
    return app


celery_app = create_celery_app(settings)
celery_app.autodiscover_tasks(["loyalty_engine.celery_tasks"])

__all__ = ["celery_app", "create_celery_app"]

# Overview: Celery app for detached background tasks (marketplace stock sync).

"""
Celery worker.

Run a worker with:
    celery -A backoffice.worker worker --loglevel=INFO

Tasks run inside a Flask app context with their own database session. When a
task is called from a process that already has an app context (eager mode,
CLI), that app is reused; a standalone worker builds its own app lazily.

Tests set CELERY_TASK_ALWAYS_EAGER so .delay() runs in-process.
"""
from __future__ import annotations

from typing import Mapping

from celery import Celery, Task
from flask import current_app, has_app_context

from .config import Config
from .extensions import db


_flask_app = None


def _worker_flask_app():
    global _flask_app
    if _flask_app is None:
        from . import create_app
        _flask_app = create_app()
    return _flask_app


class AppContextTask(Task):
    """Task base running every call in a fresh Flask app context."""

    def __call__(self, *args, **kwargs):
        flask_app = current_app._get_current_object() if has_app_context() else _worker_flask_app()
        with flask_app.app_context():
            try:
                return self.run(*args, **kwargs)
            finally:
                db.session.remove()


def celery_settings(config: Mapping) -> dict:
    """Celery settings from a Flask-style config mapping."""
    return {
        "broker_url": config.get("CELERY_BROKER_URL"),
        "result_backend": config.get("CELERY_RESULT_BACKEND"),
        "task_ignore_result": config.get("CELERY_RESULT_BACKEND") is None,
        "task_always_eager": bool(config.get("CELERY_TASK_ALWAYS_EAGER", False)),
        "task_eager_propagates": bool(config.get("CELERY_TASK_EAGER_PROPAGATES", False)),
        "task_acks_late": True,
        "worker_prefetch_multiplier": 1,
    }


celery = Celery(
    "backoffice",
    task_cls=AppContextTask,
    include=["backoffice.services.marketplace_sync"],
)
celery.conf.update(celery_settings({k: getattr(Config, k) for k in dir(Config) if k.isupper()}))


def init_celery(app) -> Celery:
    """Apply the app's Celery settings and expose the Celery app on it."""
    celery.conf.update(celery_settings(app.config))
    app.extensions["celery"] = celery
    return celery

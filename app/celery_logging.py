import logging

from celery.signals import setup_logging

from app.utils.logging_config import setup_project_logging


@setup_logging.connect
def configure_worker_logging(**kwargs):
    """Celery worker и beat используют те же хендлеры, что и основное приложение."""
    setup_project_logging()
    logging.getLogger("celery").setLevel(logging.INFO)

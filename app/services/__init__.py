"""Service layer: domain operations called by the API routers and Celery tasks."""

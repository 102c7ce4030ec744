"""FastAPI dependencies resolving the services built in the app lifespan.

Tests override these via app.dependency_overrides.
"""

from fastapi import HTTPException, Request, status


def _service(request: Request, name: str):
    service = getattr(request.app.state, name, None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{name.replace('_', ' ')} is not available",
        )
    return service


def get_subscription_manager(request: Request):
    return _service(request, "subscription_manager")


def get_scheduler(request: Request):
    return _service(request, "scheduler")


def get_dispatcher(request: Request):
    return _service(request, "dispatcher")

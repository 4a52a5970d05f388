"""Service handle shared by the v1 routers; set by main.py during lifespan."""

from fastapi import HTTPException

_service = None


def set_service(service):
    global _service
    _service = service


def get_service():
    if _service is None:
        raise HTTPException(status_code=503, detail="Queue service not initialized")
    return _service

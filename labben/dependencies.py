"""Request-scoped access to the singletons built in the application lifespan."""

from starlette.requests import Request

from labben.services.audit_service import AuditLogger
from labben.services.storage_service import ObjectStorageService


def get_storage(request: Request) -> ObjectStorageService:
    return request.app.state.storage


def get_audit_logger(request: Request) -> AuditLogger:
    return request.app.state.audit_logger

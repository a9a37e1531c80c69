"""Gateway interfaces and implementations."""

from .base import (
    BaseGateway, GatewayError, AuthenticationError, GatewayTimeout, NotFoundError, RateLimitError, UpsertResult
)
from .crm import CRMGateway
from .fss import FieldServiceGateway

__all__ = [
    'BaseGateway',
    'GatewayError',
    'AuthenticationError',
    'GatewayTimeout',
    'NotFoundError',
    'RateLimitError',
    'UpsertResult',
    'CRMGateway',
    'FieldServiceGateway',
]

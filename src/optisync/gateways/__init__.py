"""External service gateways: identity, structured data, blob storage."""

from optisync.gateways.base import (
    AuthUser,
    BlobStorageGateway,
    DataGateway,
    IdentityGateway,
    OrderBy,
    SessionStore,
)

__all__ = [
    "AuthUser",
    "BlobStorageGateway",
    "DataGateway",
    "IdentityGateway",
    "OrderBy",
    "SessionStore",
]

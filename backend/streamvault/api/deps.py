"""service providers for route dependencies, overridden in tests"""
from streamvault.services.account_registry import AccountRegistry, account_registry
from streamvault.services.chunked_upload import ChunkedUploadAssembler, upload_assembler
from streamvault.services.storage_pool import StoragePool, storage_pool
from streamvault.services.stream import StreamService, stream_service


def get_registry() -> AccountRegistry:
    return account_registry


def get_pool() -> StoragePool:
    return storage_pool


def get_assembler() -> ChunkedUploadAssembler:
    return upload_assembler


def get_stream_service() -> StreamService:
    return stream_service

"""
Exports the generated ``registry_pb2`` / ``registry_pb2_grpc`` modules for
``registry.proto`` and the mapping between registry exceptions and gRPC
status codes, shared by the store and node services.
"""

from __future__ import annotations

import functools

import grpc
from kazoo.exceptions import KazooException

from .errors import (
    CounterCorruptedError,
    DuplicateIdError,
    IneligibleForMasterError,
    LostMastershipError,
    NodeUnavailableError,
    NotMasterError,
    SchemaNotFoundError,
    SchemaRegistryError,
)
from .store import SchemaRecord

__all__ = [
    "registry_pb2",
    "registry_pb2_grpc",
    "STATUS_CODES",
    "rpc_errors",
    "raise_for",
    "record_to_message",
    "record_from_message",
]

# Compiled from the .proto at import time (needs grpcio-tools)
registry_pb2, registry_pb2_grpc = grpc.protos_and_services("registry/registry.proto")

# Most specific first
STATUS_CODES = [
    (NotMasterError, grpc.StatusCode.FAILED_PRECONDITION),
    (LostMastershipError, grpc.StatusCode.ABORTED),
    (IneligibleForMasterError, grpc.StatusCode.PERMISSION_DENIED),
    (SchemaNotFoundError, grpc.StatusCode.NOT_FOUND),
    (DuplicateIdError, grpc.StatusCode.ALREADY_EXISTS),
    (CounterCorruptedError, grpc.StatusCode.DATA_LOSS),
    (SchemaRegistryError, grpc.StatusCode.INTERNAL),
]


def rpc_errors(method):
    """
    Abort the RPC with the status code of a raised registry error.

    Note:
        A coordination failure on the serving node aborts with
        ``UNAVAILABLE``, the same code a caller sees when the node itself is
        down.
    """
    @functools.wraps(method)
    def wrapper(self, request, context: grpc.ServicerContext):
        try:
            return method(self, request, context)
        except SchemaRegistryError as e:
            code = next(c for t, c in STATUS_CODES if isinstance(e, t))
            context.abort(code, str(e))
        except KazooException as e:
            context.abort(grpc.StatusCode.UNAVAILABLE, f"coordination service unavailable: {e!r}")

    return wrapper


def raise_for(error: grpc.RpcError, target: str) -> None:
    """
    Raise the registry error matching a failed call.

    :param error: The failed call.
    :param target: ``host:port`` that was called, for the message.
    :raises SchemaRegistryError: The mapped subclass; transport failures and
        unknown codes become ``NodeUnavailableError``.
    """
    code = error.code()
    for error_type, error_code in STATUS_CODES:
        if code == error_code:
            raise error_type(error.details()) from error
    raise NodeUnavailableError(f"{target} {code.name}: {error.details()}") from error


def record_to_message(record: SchemaRecord):
    return registry_pb2.Schema(
        subject=record.subject, version=record.version, id=record.id, schema=record.schema
    )


def record_from_message(message) -> SchemaRecord:
    return SchemaRecord(message.subject, message.version, message.id, message.schema)

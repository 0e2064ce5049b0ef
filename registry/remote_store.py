"""
Exports ``StoreServicer`` and ``RemoteStore``: the shared ``SchemaStore``
served over gRPC so registry nodes in separate processes append to, and read
from, one record log.
"""

from __future__ import annotations

import grpc

from .rpc import raise_for, record_from_message, record_to_message, registry_pb2, registry_pb2_grpc, rpc_errors
from .store import SchemaRecord, SchemaStore

__all__ = ["StoreServicer", "RemoteStore"]


class StoreServicer(registry_pb2_grpc.StoreServicer):
    def __init__(self, store: SchemaStore):
        self.store: SchemaStore = store

    @rpc_errors
    def Append(self, request, context):
        self.store.append(record_from_message(request))
        return registry_pb2.Empty()

    @rpc_errors
    def MaxId(self, request, context):
        return registry_pb2.SchemaId(id=self.store.max_id())

    @rpc_errors
    def GetById(self, request, context):
        return record_to_message(self.store.get_by_id(request.id))

    @rpc_errors
    def GetVersion(self, request, context):
        return record_to_message(self.store.get_version(request.subject, request.version))

    @rpc_errors
    def LatestVersion(self, request, context):
        return registry_pb2.VersionReply(version=self.store.latest_version(request.subject))

    @rpc_errors
    def Versions(self, request, context):
        return registry_pb2.VersionList(versions=self.store.versions(request.subject))

    @rpc_errors
    def Lookup(self, request, context):
        return _maybe(self.store.lookup(request.subject, request.schema))

    @rpc_errors
    def FindSchema(self, request, context):
        return _maybe(self.store.find_schema(request.schema))


def _maybe(record: SchemaRecord | None):
    if record is None:
        return registry_pb2.MaybeSchema()
    return registry_pb2.MaybeSchema(record=record_to_message(record))


class RemoteStore:
    """
    Client of a ``StoreServicer`` exposing the same operations as
    ``SchemaStore``.

    :param target: ``host:port`` of the store server.
    :param timeout: Deadline in seconds per call.
    """

    def __init__(self, target: str, timeout: float = 5.0):
        self.target: str = target
        self.timeout: float = timeout
        self._channel = grpc.insecure_channel(target)
        self._stub = registry_pb2_grpc.StoreStub(self._channel)

    def close(self) -> None:
        self._channel.close()

    def _call(self, method, request):
        try:
            return method(request, timeout=self.timeout)
        except grpc.RpcError as e:
            raise_for(e, self.target)

    def append(self, record: SchemaRecord) -> None:
        self._call(self._stub.Append, record_to_message(record))

    def max_id(self) -> int:
        return self._call(self._stub.MaxId, registry_pb2.Empty()).id

    def get_by_id(self, schema_id: int) -> SchemaRecord:
        return record_from_message(self._call(self._stub.GetById, registry_pb2.SchemaId(id=schema_id)))

    def get_version(self, subject: str, version: int = -1) -> SchemaRecord:
        reply = self._call(self._stub.GetVersion, registry_pb2.SubjectVersion(subject=subject, version=version))
        return record_from_message(reply)

    def latest_version(self, subject: str) -> int:
        return self._call(self._stub.LatestVersion, registry_pb2.Subject(subject=subject)).version

    def versions(self, subject: str) -> list[int]:
        return list(self._call(self._stub.Versions, registry_pb2.Subject(subject=subject)).versions)

    def lookup(self, subject: str, schema: str) -> SchemaRecord | None:
        reply = self._call(self._stub.Lookup, registry_pb2.SubjectSchema(subject=subject, schema=schema))
        return record_from_message(reply.record) if reply.HasField("record") else None

    def find_schema(self, schema: str) -> SchemaRecord | None:
        reply = self._call(self._stub.FindSchema, registry_pb2.SchemaText(schema=schema))
        return record_from_message(reply.record) if reply.HasField("record") else None

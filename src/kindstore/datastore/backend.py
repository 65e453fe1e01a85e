"""
Google Cloud Datastore backend implementation.

This module provides DatastoreBackend, which implements
DatastoreBackendProtocol on the Datastore v1 API through the
google-cloud-datastore client library. Property values are encoded with
google.cloud.datastore.helpers; transaction ids and cursors (bytes on the
wire) are exposed as URL-safe base64 strings.

Errors from google.api_core are raised as BackendError, with the original
exception as __cause__. Retries follow the client library defaults.
"""

from __future__ import annotations

import base64
import binascii
import logging
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

import grpc  # type: ignore
import google.auth  # type: ignore
from google.api_core import exceptions as api_exceptions  # type: ignore
from google.auth import exceptions as auth_exceptions  # type: ignore
from google.cloud import datastore  # type: ignore
from google.cloud.datastore import helpers  # type: ignore
from google.cloud.datastore_v1 import DatastoreClient  # type: ignore
from google.cloud.datastore_v1.services.datastore.transports import (  # type: ignore
    DatastoreGrpcTransport,
)
from google.cloud.datastore_v1.types import datastore as datastore_pb2  # type: ignore
from google.cloud.datastore_v1.types import entity as entity_pb2  # type: ignore
from google.cloud.datastore_v1.types import query as query_pb2  # type: ignore

from ..config import DatastoreConfig
from ..errors import BackendError, ConfigurationError
from ..protocols import (
    CommitMode,
    CommitResult,
    Cursor,
    Key,
    Mutation,
    MutationOp,
    PathElement,
    QueryResult,
    RawEntity,
)

_log = logging.getLogger(__name__)

# Datastore refuses to index strings longer than this many bytes
MAX_INDEXED_STRING_BYTES = 1500

_COMMIT_MODES = {
    CommitMode.TRANSACTIONAL: datastore_pb2.CommitRequest.Mode.TRANSACTIONAL,
    CommitMode.NON_TRANSACTIONAL: datastore_pb2.CommitRequest.Mode.NON_TRANSACTIONAL,
}

_NOT_FINISHED = query_pb2.QueryResultBatch.MoreResultsType.NOT_FINISHED


def encode_token(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii")


def decode_token(token: str, what: str = "token") -> bytes:
    try:
        return base64.urlsafe_b64decode(token.encode("ascii"))
    except (binascii.Error, UnicodeEncodeError) as e:
        raise BackendError(f"Invalid {what}: {token!r}") from e


class DatastoreBackend:
    """Google Cloud Datastore implementation of DatastoreBackendProtocol.

    Usage:
        backend = DatastoreBackend("my-project")
        store = Store("Book", Gateway(backend))

    Or, reading DATASTORE_* environment variables:
        backend = DatastoreBackend.from_config(get_config())
    """

    def __init__(
        self,
        project: str,
        namespace: Optional[str] = None,
        api: Optional[DatastoreClient] = None,
        timeout: Optional[float] = None,
    ) -> None:
        """Initialize the backend.

        Args:
            project: The Google Cloud project id.
            namespace: The namespace for every key; None for the default.
            api: A Datastore v1 API client; one using application default
                credentials is created if omitted.
            timeout: Per-RPC timeout in seconds.
        """
        self._project = project
        self._namespace = namespace
        self._api = api if api is not None else DatastoreClient()
        self._timeout = timeout

    @classmethod
    def from_config(cls, config: DatastoreConfig) -> DatastoreBackend:
        """Create a backend from configuration.

        When an emulator host is configured the backend talks to it over an
        insecure channel without credentials.

        Raises:
            ConfigurationError: if no project id is configured and none can
                be found from application default credentials.
        """
        project = config.project_id
        api: Optional[DatastoreClient] = None
        if config.emulator_host:
            channel = grpc.insecure_channel(config.emulator_host)
            api = DatastoreClient(transport=DatastoreGrpcTransport(channel=channel))
            _log.info("Using Datastore emulator at %s", config.emulator_host)
        if not project:
            try:
                _, project = google.auth.default()
            except auth_exceptions.DefaultCredentialsError as e:
                raise ConfigurationError(
                    "No Google Cloud credentials found; set DATASTORE_PROJECT_ID "
                    "and application default credentials"
                ) from e
            if not project:
                raise ConfigurationError(
                    "DATASTORE_PROJECT_ID or GOOGLE_CLOUD_PROJECT must be set"
                )
        return cls(project, config.namespace, api=api, timeout=config.timeout)

    @property
    def project(self) -> str:
        return self._project

    @property
    def namespace(self) -> Optional[str]:
        return self._namespace

    # =========================================================================
    # Protocol operations
    # =========================================================================

    def commit(
        self,
        mutations: Sequence[Mutation],
        mode: CommitMode,
        transaction: Optional[str] = None,
    ) -> CommitResult:
        request = datastore_pb2.CommitRequest(
            project_id=self._project,
            mode=_COMMIT_MODES[mode],
            mutations=[self._mutation_pb(m) for m in mutations],
        )
        if transaction:
            request.transaction = decode_token(transaction, "transaction")
        response = self._call(self._api.commit, request)
        keys: List[Optional[Key]] = []
        for mutation, result in zip(mutations, response.mutation_results):
            if mutation.op is MutationOp.INSERT_AUTO_ID and "key" in result:
                keys.append(self.from_ds_key(helpers.key_from_protobuf(result.key)))
            else:
                keys.append(None)
        return CommitResult(index_updates=response.index_updates, keys=keys)

    def lookup(
        self, keys: Sequence[Key], transaction: Optional[str] = None
    ) -> List[RawEntity]:
        key_pbs = [self.to_ds_key(k).to_protobuf() for k in keys]
        found: List[RawEntity] = []
        while key_pbs:
            request = datastore_pb2.LookupRequest(
                project_id=self._project,
                keys=key_pbs,
                **self._read_options(transaction),
            )
            response = self._call(self._api.lookup, request)
            for result in response.found:
                found.append(self.from_ds_entity(helpers.entity_from_protobuf(result.entity)))
            # The service may defer some keys to a later call
            key_pbs = list(response.deferred)
        return found

    def run_query(
        self,
        gql: str,
        params: Optional[Mapping[str, Any]] = None,
        transaction: Optional[str] = None,
    ) -> QueryResult:
        gql_query = query_pb2.GqlQuery(
            query_string=gql,
            allow_literals=True,
            named_bindings={
                name: self._binding_pb(value) for name, value in (params or {}).items()
            },
        )
        request = datastore_pb2.RunQueryRequest(
            project_id=self._project,
            partition_id=self._partition_id(),
            gql_query=gql_query,
            **self._read_options(transaction),
        )
        response = self._call(self._api.run_query, request)
        batch = response.batch
        results = [
            self.from_ds_entity(helpers.entity_from_protobuf(r.entity))
            for r in batch.entity_results
        ]
        # A batch may stop early; continue with the parsed query from its end cursor
        query_pb = response.query
        while batch.more_results == _NOT_FINISHED:
            query_pb.start_cursor = batch.end_cursor
            query_pb.offset = max(0, query_pb.offset - batch.skipped_results)
            if query_pb.limit is not None:
                query_pb.limit = max(0, query_pb.limit - len(batch.entity_results))
            request = datastore_pb2.RunQueryRequest(
                project_id=self._project,
                partition_id=self._partition_id(),
                query=query_pb,
                **self._read_options(transaction),
            )
            batch = self._call(self._api.run_query, request).batch
            results.extend(
                self.from_ds_entity(helpers.entity_from_protobuf(r.entity))
                for r in batch.entity_results
            )
        end_cursor = encode_token(batch.end_cursor) if batch.end_cursor else None
        return QueryResult(results=results, end_cursor=end_cursor)

    def begin_transaction(self, cross_group: bool = False) -> str:
        # Datastore v1 read-write transactions may span up to 25 entity
        # groups, so cross_group needs no request option here
        request = datastore_pb2.BeginTransactionRequest(
            project_id=self._project,
            transaction_options=datastore_pb2.TransactionOptions(
                read_write=datastore_pb2.TransactionOptions.ReadWrite()
            ),
        )
        response = self._call(self._api.begin_transaction, request)
        _log.debug("Datastore transaction begun (cross_group=%s)", cross_group)
        return encode_token(response.transaction)

    def close(self) -> None:
        self._api.transport.close()

    # =========================================================================
    # Conversion to and from google.cloud.datastore types
    # =========================================================================

    def to_ds_key(self, key: Key) -> datastore.Key:
        return datastore.Key(
            *key.flat_path(), project=self._project, namespace=self._namespace
        )

    @staticmethod
    def from_ds_key(ds_key: datastore.Key) -> Key:
        return Key(
            tuple(
                PathElement(p["kind"], id=p.get("id"), name=p.get("name"))
                for p in ds_key.path
            )
        )

    def to_ds_value(self, value: Any) -> Any:
        if isinstance(value, RawEntity):
            return self.to_ds_entity(value)
        if isinstance(value, Key):
            return self.to_ds_key(value)
        if isinstance(value, list):
            return [self.to_ds_value(v) for v in value]
        return value

    def to_ds_entity(self, raw: RawEntity) -> datastore.Entity:
        excluded = [
            name
            for name, value in raw.properties.items()
            if isinstance(value, str)
            and len(value.encode("utf-8")) > MAX_INDEXED_STRING_BYTES
        ]
        entity = datastore.Entity(
            key=self.to_ds_key(raw.key) if raw.key is not None else None,
            exclude_from_indexes=excluded,
        )
        for name, value in raw.properties.items():
            entity[name] = self.to_ds_value(value)
        return entity

    def from_ds_value(self, value: Any) -> Any:
        if isinstance(value, datastore.Entity):
            return self.from_ds_entity(value)
        if isinstance(value, datastore.Key):
            return self.from_ds_key(value)
        if isinstance(value, list):
            return [self.from_ds_value(v) for v in value]
        return value

    def from_ds_entity(self, entity: datastore.Entity) -> RawEntity:
        key = self.from_ds_key(entity.key) if entity.key is not None else None
        return RawEntity(key, {name: self.from_ds_value(v) for name, v in entity.items()})

    # =========================================================================
    # Request helpers
    # =========================================================================

    def _mutation_pb(self, mutation: Mutation) -> datastore_pb2.Mutation:
        if mutation.op is MutationOp.DELETE:
            return datastore_pb2.Mutation(
                delete=self.to_ds_key(mutation.target_key).to_protobuf()
            )
        assert mutation.entity is not None
        entity_pb = helpers.entity_to_protobuf(self.to_ds_entity(mutation.entity))
        if mutation.op is MutationOp.INSERT_AUTO_ID:
            return datastore_pb2.Mutation(insert=entity_pb)
        return datastore_pb2.Mutation(upsert=entity_pb)

    def _value_pb(self, value: Any) -> entity_pb2.Value:
        # helpers only encode values as entity properties
        holder = datastore.Entity()
        holder["value"] = self.to_ds_value(value)
        return helpers.entity_to_protobuf(holder).properties["value"]

    def _binding_pb(self, value: Any) -> query_pb2.GqlQueryParameter:
        if isinstance(value, Cursor):
            return query_pb2.GqlQueryParameter(cursor=decode_token(value.value, "cursor"))
        return query_pb2.GqlQueryParameter(value=self._value_pb(value))

    def _partition_id(self) -> entity_pb2.PartitionId:
        return entity_pb2.PartitionId(
            project_id=self._project, namespace_id=self._namespace or ""
        )

    @staticmethod
    def _read_options(transaction: Optional[str]) -> Dict[str, Any]:
        if not transaction:
            return {}
        return {
            "read_options": datastore_pb2.ReadOptions(
                transaction=decode_token(transaction, "transaction")
            )
        }

    def _call(self, method: Callable[..., Any], request: Any) -> Any:
        try:
            return method(request=request, timeout=self._timeout)
        except api_exceptions.GoogleAPIError as e:
            raise BackendError(str(e), code=getattr(e, "code", None)) from e

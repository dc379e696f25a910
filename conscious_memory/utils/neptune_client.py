"""
Amazon Neptune graph database client.

Projection writes go through the Gremlin Python driver with AWS SigV4 authentication; every write
is a merge keyed by the ``id`` property, so applying it once or many times yields the same graph.
Ad-hoc read queries go through the Neptune openCypher endpoint (boto3 ``neptunedata``).
"""

import json
import re
from decimal import Decimal
from functools import wraps
from typing import Any, Dict, Iterable, List, Optional

import boto3
from boto3 import Session
from botocore.auth import SigV4Auth
from botocore.awsrequest import AWSRequest
from botocore.exceptions import BotoCoreError, ClientError
from gremlin_python.driver.aiohttp.transport import AiohttpTransport
from gremlin_python.driver.driver_remote_connection import DriverRemoteConnection
from gremlin_python.driver.protocol import GremlinServerError
from gremlin_python.process.anonymous_traversal import traversal
from gremlin_python.process.graph_traversal import __
from gremlin_python.process.traversal import Cardinality, P

from ..models.errors import ConsciousMemoryError, StoreConnectivityError, ValidationError
from .config import NeptuneConfig
from .logging_config import get_logger

logger = get_logger(__name__)

_SKIP_LIMIT_PATTERN = re.compile(r'\s+(SKIP|LIMIT)\s+\d+', re.IGNORECASE)
_COUNTABLE_PATTERN = re.compile(r'^(MATCH\s.+?)\s+(?:RETURN|ORDER\s+BY)\s', re.IGNORECASE | re.DOTALL)
_BAD_QUERY_CODES = ('MalformedQueryException', 'BadRequestException', 'InvalidParameterException')
# Gremlin status codes that mean the connection itself is unusable (auth, throttling)
_UNREACHABLE_STATUS_CODES = (401, 403, 407, 429)


class NeptuneError(StoreConnectivityError):
    """Custom exception for Neptune errors."""
    pass


class NeptuneWriteError(ConsciousMemoryError):
    """Neptune answered but rejected a single traversal, e.g. an invalid property value."""
    pass


def _is_rejection(error: Exception) -> bool:
    """True when the server (or the client-side serializer) refused this traversal but the connection is fine."""
    if isinstance(error, GremlinServerError):
        return error.status_code not in _UNREACHABLE_STATUS_CODES
    return isinstance(error, (TypeError, ValueError))


def retry_on_connection_error(func):
    """Decorator to connect lazily and retry Gremlin operations once after a dropped connection.

    Rejected traversals raise ``NeptuneWriteError`` and are not retried; transport failures raise
    ``NeptuneError``.
    """

    @wraps(func)
    def wrapper(self, *args, **kwargs):
        try:
            self._ensure_connected()
            return func(self, *args, **kwargs)
        except (NeptuneError, NeptuneWriteError):
            raise
        except Exception as e:
            if _is_rejection(e):
                logger.error(f'Neptune rejected {func.__name__}: {e}')
                raise NeptuneWriteError(f'Failed to {func.__name__}: {e}')
            if 'cannot write to closing transport' in str(e).lower() or 'closed' in str(e).lower():
                logger.warning(f'Connection error detected: {e}. Reconnecting...')
                self.close()
                try:
                    self._ensure_connected()
                    return func(self, *args, **kwargs)
                except Exception as retry_e:
                    logger.error(f'Error in {func.__name__}: {retry_e}')
                    if _is_rejection(retry_e):
                        raise NeptuneWriteError(f'Failed to {func.__name__}: {retry_e}')
                    raise NeptuneError(f'Failed to {func.__name__}: {retry_e}')
            else:
                logger.error(f'Error in {func.__name__}: {e}')
                raise NeptuneError(f'Failed to {func.__name__}: {e}')

    return wrapper


def normalize_value(value: Any) -> Any:
    """Convert store-specific numeric representations into native Python numbers.

    Handles ``Decimal`` values and wide integers serialized as ``{'low': ..., 'high': ...}``,
    recursing into lists and mappings.
    """
    if isinstance(value, bool):
        return value
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    if isinstance(value, dict):
        if set(value.keys()) == {'low', 'high'} and all(isinstance(v, int) for v in value.values()):
            return (value['high'] << 32) + (value['low'] & 0xFFFFFFFF)
        return {key: normalize_value(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [normalize_value(item) for item in value]
    return value


def paginate_statement(statement: str, skip: int, limit: int) -> str:
    """Strip existing SKIP/LIMIT clauses from a Cypher statement and append new ones."""
    clean = _SKIP_LIMIT_PATTERN.sub('', statement.strip().rstrip(';')).strip()
    return f'{clean} SKIP {skip} LIMIT {limit}'


def count_statement(statement: str) -> Optional[str]:
    """Derive a total-count query from a ``MATCH ... RETURN`` statement.

    Returns:
        Count query returning a single ``total`` column, or None if the statement shape is not supported
    """
    clean = _SKIP_LIMIT_PATTERN.sub('', statement.strip().rstrip(';')).strip()
    match = _COUNTABLE_PATTERN.match(clean + ' ')
    if not match:
        return None
    return f'{match.group(1)} RETURN count(*) AS total'


class NeptuneClient:
    """Amazon Neptune client for the memory knowledge graph."""

    def __init__(self, config: NeptuneConfig):
        """
        Initialize Neptune client. Connections are opened on first use.

        Args:
            config: NeptuneConfig instance with connection parameters
        """
        self.config = config
        self.connection = None
        self.g = None
        self._cypher = None

    def _connect(self):
        """Establish the Gremlin connection to Neptune."""
        conn_string = f'wss://{self.config.endpoint}:{self.config.port}/gremlin'

        credentials = Session().get_credentials()
        if credentials is None:
            raise NeptuneError('No AWS credentials found')
        creds = credentials.get_frozen_credentials()

        region = self.config.region or Session().region_name or 'us-east-1'

        # Create signed request for WebSocket connection
        request = AWSRequest(method='GET', url=conn_string, data=None)
        SigV4Auth(creds, 'neptune-db', region).add_auth(request)

        self.connection = DriverRemoteConnection(conn_string,
                                                 'g',
                                                 headers=request.headers.items(),
                                                 transport_factory=lambda: AiohttpTransport(call_from_event_loop=True))
        self.g = traversal().with_remote(self.connection)

        logger.info(f'Connected to Neptune at {self.config.endpoint}')

    def _ensure_connected(self):
        if self.g is None:
            self._connect()

    def _cypher_client(self):
        if self._cypher is None:
            self._cypher = boto3.client('neptunedata',
                                        endpoint_url=f'https://{self.config.endpoint}:{self.config.port}',
                                        region_name=self.config.region)
        return self._cypher

    def close(self):
        """Close the Neptune connection. Safe to call repeatedly."""
        if self.connection is not None:
            try:
                self.connection.close()
            except Exception as e:
                logger.warning(f'Error closing Neptune connection: {e}')
        self.connection = None
        self.g = None

    @retry_on_connection_error
    def check_connection(self) -> bool:
        """
        Verify the graph store answers a trivial traversal.

        Returns:
            True when reachable

        Raises:
            NeptuneError: If Neptune cannot be reached
        """
        try:
            self.g.V().limit(1).count().next()
        except GremlinServerError as e:
            raise NeptuneError(f'Failed to check_connection: {e}')
        return True

    @retry_on_connection_error
    def upsert_node(self, node_id: str, label: str, properties: Dict[str, Any]) -> None:
        """
        Create a vertex if no vertex with this id exists, then set its properties.

        Args:
            node_id: Deterministic vertex id
            label: Vertex label used on creation
            properties: Scalar properties, overwritten on every upsert
        """
        upsert = self.g.V().has('id', node_id).fold()\
            .coalesce(__.unfold(), __.add_v(label).property('id', node_id))

        for key, value in properties.items():
            if value is not None:
                upsert = upsert.property(Cardinality.single, key, value)

        upsert.iterate()
        logger.debug(f'Upserted {label} vertex: {node_id}')

    @retry_on_connection_error
    def upsert_relationship(self,
                            source_id: str,
                            rel_type: str,
                            target_id: str,
                            properties: Optional[Dict[str, Any]] = None) -> None:
        """
        Create an edge between two existing vertices unless one of this type already connects them.

        Args:
            source_id: Source vertex id
            rel_type: Edge label
            target_id: Target vertex id
            properties: Scalar edge properties, overwritten on every upsert
        """
        upsert = self.g.V().has('id', source_id).as_('source')\
            .V().has('id', target_id)\
            .coalesce(__.in_e(rel_type).where(__.out_v().as_('source')), __.add_e(rel_type).from_('source'))

        for key, value in (properties or {}).items():
            if value is not None:
                upsert = upsert.property(key, value)

        upsert.iterate()
        logger.debug(f'Upserted {rel_type} edge: {source_id} -> {target_id}')

    @retry_on_connection_error
    def prune_relationships(self, source_id: str, rel_type: str, keep_target_ids: Iterable[str]) -> None:
        """
        Drop outgoing edges of a type whose target is not in the keep set.

        Args:
            source_id: Source vertex id
            rel_type: Edge label
            keep_target_ids: Target vertex ids whose edges must survive
        """
        keep = sorted(set(keep_target_ids))
        edges = self.g.V().has('id', source_id).out_e(rel_type)
        if keep:
            edges = edges.where(__.in_v().has('id', P.without(keep)))

        edges.drop().iterate()
        logger.debug(f'Pruned stale {rel_type} edges of {source_id}')

    @retry_on_connection_error
    def delete_node(self, node_id: str) -> None:
        """
        Delete a vertex and all its edges. Deleting a missing vertex is a no-op.

        Args:
            node_id: Vertex id
        """
        self.g.V().has('id', node_id).drop().iterate()
        logger.debug(f'Deleted vertex: {node_id}')

    @retry_on_connection_error
    def list_node_ids(self, label: str) -> List[str]:
        """
        List the ids of all vertices with a label.

        Args:
            label: Vertex label

        Returns:
            List of vertex ids
        """
        return self.g.V().has_label(label).values('id').to_list()

    def run_query(self, statement: str, parameters: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """
        Execute an openCypher statement.

        Args:
            statement: openCypher statement
            parameters: Statement parameters

        Returns:
            Result rows with numeric values normalized to int/float

        Raises:
            ValidationError: If Neptune rejects the statement
            NeptuneError: If Neptune cannot be reached
        """
        request = {'openCypherQuery': statement}
        if parameters:
            request['parameters'] = json.dumps(parameters)

        try:
            response = self._cypher_client().execute_open_cypher_query(**request)
        except ClientError as e:
            if e.response.get('Error', {}).get('Code') in _BAD_QUERY_CODES:
                raise ValidationError(f'Invalid openCypher statement: {e}')
            logger.error(f'Error running openCypher statement: {e}')
            raise NeptuneError(f'Failed to run query: {e}')
        except BotoCoreError as e:
            logger.error(f'Error reaching Neptune openCypher endpoint: {e}')
            raise NeptuneError(f'Failed to run query: {e}')

        return [normalize_value(row) for row in response.get('results', [])]

    def health_check(self) -> bool:
        """
        Perform a health check on the Neptune service.

        Returns:
            True if service is healthy, False otherwise
        """
        try:
            return self.check_connection()
        except Exception as e:
            logger.error(f'Neptune health check failed: {e}')
            return False

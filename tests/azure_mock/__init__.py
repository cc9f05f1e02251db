"""In-memory Azure cloud for reconciler tests.

Provides a ClientFactory whose clients operate on real Azure SDK model
objects held in memory, plus builders for the reconciliation inputs.

Usage:
    from azure_mock import MockClientFactory, make_config, make_infrastructure

    factory = MockClientFactory()
    result = await reconcile(factory, make_infrastructure(), make_cluster(), make_config())

    assert factory.cloud.exists(resource_group_id(SUBSCRIPTION_ID, CLUSTER))
"""

from .builders import (
    CLUSTER,
    REGION,
    StateRecorder,
    make_cluster,
    make_config,
    make_infrastructure,
)
from .cloud import (
    CREATE_OR_UPDATE,
    DELETE,
    GET,
    LIST,
    SUBSCRIPTION_ID,
    MockCall,
    MockClientFactory,
    MockCloud,
)
from .scaler import MockClusterScaler

__all__ = [
    "CLUSTER",
    "CREATE_OR_UPDATE",
    "DELETE",
    "GET",
    "LIST",
    "REGION",
    "SUBSCRIPTION_ID",
    "MockCall",
    "MockClientFactory",
    "MockCloud",
    "MockClusterScaler",
    "StateRecorder",
    "make_cluster",
    "make_config",
    "make_infrastructure",
]

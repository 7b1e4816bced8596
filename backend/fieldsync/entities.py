"""Entity types synced by default, in pull priority order."""

from typing import List

from fieldsync.schemas.sync import SyncEntityConfig

DEFAULT_ENTITIES: List[SyncEntityConfig] = [
    SyncEntityConfig(
        name="clients",
        table_name="clients",
        api_endpoint="/sync/clients",
        api_mutation_endpoint="/sync/clients/mutations",
        batch_size=100,
        priority=10,
    ),
    SyncEntityConfig(
        name="categories",
        table_name="categories",
        api_endpoint="/sync/categories",
        api_mutation_endpoint="/sync/categories/mutations",
        batch_size=200,
        priority=20,
    ),
    SyncEntityConfig(
        name="catalog_items",
        table_name="catalog_items",
        api_endpoint="/sync/catalog-items",
        api_mutation_endpoint="/sync/catalog-items/mutations",
        batch_size=200,
        priority=30,
    ),
    SyncEntityConfig(
        name="quotes",
        table_name="quotes",
        api_endpoint="/sync/quotes",
        api_mutation_endpoint="/sync/quotes/mutations",
        batch_size=100,
        priority=40,
    ),
    SyncEntityConfig(
        name="work_orders",
        table_name="work_orders",
        api_endpoint="/sync/work-orders",
        api_mutation_endpoint="/sync/work-orders/mutations",
        batch_size=100,
        priority=50,
    ),
    SyncEntityConfig(
        name="quote_signatures",
        table_name="quote_signatures",
        api_endpoint="/sync/quote-signatures",
        api_mutation_endpoint="/sync/quote-signatures/mutations",
        batch_size=50,
        priority=60,
        scope="recent",
    ),
]

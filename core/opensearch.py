"""
OpenSearch configuration
"""

from opensearchpy import OpenSearch
from core.config import Settings
from core.logger import logger

# Mapping for file documents: keyword fields back the equality filters,
# text fields back the free-text search
FILES_INDEX_BODY = {
    "settings": {"index": {"number_of_shards": 1}},
    "mappings": {
        "dynamic": "strict",
        "properties": {
            "id": {"type": "keyword"},
            "storage_ref": {"type": "keyword"},
            "url": {"type": "keyword", "index": False},
            "secure_url": {"type": "keyword", "index": False},
            "original_name": {
                "type": "text",
                "fields": {"keyword": {"type": "keyword", "ignore_above": 1024}},
            },
            "sanitized_name": {"type": "text"},
            "mime_type": {"type": "keyword"},
            "size_bytes": {"type": "long"},
            "checksum": {"type": "keyword", "index": False},
            "uploaded_by": {"type": "keyword"},
            "tags": {"type": "keyword"},
            "is_public": {"type": "boolean"},
            # Whole mapping kept as JSON so mixed value types never clash
            "metadata_json": {"type": "keyword", "index": False},
            "title": {"type": "text"},
            "description": {"type": "text"},
            "created_at": {"type": "date"},
            "updated_at": {"type": "date"},
        },
    },
}


def get_opensearch_client(settings: Settings) -> OpenSearch | None:
    """Build a client from settings, or None when no host is configured"""
    if settings.OPENSEARCH_HOST is None:
        return None

    # Connect to opensearch
    if settings.OPENSEARCH_USER and settings.OPENSEARCH_PASSWORD:
        auth = (settings.OPENSEARCH_USER, settings.OPENSEARCH_PASSWORD)
    else:
        auth = None

    return OpenSearch(
        hosts=[
            {
                "host": settings.OPENSEARCH_HOST,
                "port": int(settings.OPENSEARCH_PORT or 9200),
            }
        ],
        http_compress=True,  # enables gzip compression for request bodies
        http_auth=auth,
        use_ssl=settings.OPENSEARCH_USE_SSL,
        timeout=settings.METADATA_TIMEOUT,
    )


def init_indexes(client, index: str) -> None:
    if client is None:
        return

    # Create index if it does not exist
    if not client.indices.exists(index=index):
        client.indices.create(index=index, body=FILES_INDEX_BODY)
        logger.info("Index '%s' created successfully.", index)
    else:
        logger.info("Index '%s' already exists.", index)

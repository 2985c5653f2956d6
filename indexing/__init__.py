"""Bulk document indexing routed through the in-flight tracker."""

from indexing.bulk import BulkIndexer, JsonlBulkSink, document_id

__all__ = ["BulkIndexer", "JsonlBulkSink", "document_id"]

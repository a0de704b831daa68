"""
sap_b1.batch - OData $batch support
===================================

- BatchRequest: ordered builder with changesets, multipart encoder
- BatchResponse: decoder returning one BatchResult per sub-request
"""

from sap_b1.batch.request import BatchItem, BatchPart, BatchRequest, EncodedBatch
from sap_b1.batch.response import BatchResponse, BatchResult

__all__ = [
    "BatchItem",
    "BatchPart",
    "BatchRequest",
    "EncodedBatch",
    "BatchResponse",
    "BatchResult",
]

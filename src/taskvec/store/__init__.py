"""Vector storage — store protocol, SQL implementation, ANN indexes."""

from taskvec.store.database import HNSW_THRESHOLD, DatabaseVectorStore
from taskvec.store.hnsw import HNSWIndex
from taskvec.store.ivf import IVFFlatIndex
from taskvec.store.protocols import AnnIndex, TrainableIndex, VectorStore

__all__ = [
    "HNSW_THRESHOLD",
    "AnnIndex",
    "DatabaseVectorStore",
    "HNSWIndex",
    "IVFFlatIndex",
    "TrainableIndex",
    "VectorStore",
]

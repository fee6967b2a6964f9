from .blobstore import (
    BlobStore,
    InMemoryBlobStore,
    HttpBlobStore,
    StoreCallReport,
    )

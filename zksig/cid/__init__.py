from .addresser import (
    CODEC_DAG_PB,
    CODEC_RAW,
    HASH_SHA2_256,
    ContentIdentifier,
    encode_file_node,
    identify,
    identify_raw,
    normalize,
    )
from .car import (
    Block,
    build_file_dag,
    encode_car,
    identify_blob,
    pack_car,
    )
